"""Tests for the Struts Lambda container handler.

These tests cover one-time filter registration, retry after a failed
initialization, the X-Struts-StatusCode override and the handler factories.
"""

import json
import threading
import time
from unittest.mock import patch

import pytest
from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request, Response

from conftest import action_app, make_http_api_v2_event, make_proxy_event
from core import timer
from core.exceptions import ContainerInitializationError
from core.interfaces import AwsProxyRequest, AwsProxyResponse, HttpApiV2ProxyRequest
from core.servlet import (
    CompletionLatch,
    ContainerRequest,
    ContainerResponse,
    DispatcherType,
    Filter,
    FilterRegistration,
)
from server.adapters.aws_lambda import AwsHttpApiV2RequestReader, AwsProxyRequestReader
from server.dispatch_filter import ActionDispatchFilter
from server.struts_handler import (
    HEADER_STRUTS_STATUS_CODE,
    STRUTS_FILTER_NAME,
    TIMER_STRUTS_COLD_START_INIT,
    TIMER_STRUTS_HANDLE_REQUEST,
    InitializationState,
    StrutsLambdaContainerHandler,
    get_aws_proxy_handler,
    get_http_api_v2_proxy_handler,
    parse_status_code,
)


class PassThroughFilter(Filter):
    """Filter that only continues the chain."""

    def do_filter(self, request, response, chain):
        chain.do_filter(request, response)


class ServerErrorFilter(Filter):
    """Filter that answers 500 but signals 404 through the status header."""

    def do_filter(self, request, response, chain):
        response.set_status(500)
        response.set_header(HEADER_STRUTS_STATUS_CODE, "404")
        response.flush_buffer()


def _request(path: str) -> ContainerRequest:
    return ContainerRequest(EnvironBuilder(path=path).get_environ())


@pytest.fixture
def handler() -> StrutsLambdaContainerHandler:
    return get_aws_proxy_handler(application=action_app)


class TestConstruction:
    """Test handler construction."""

    def test_new_handler_is_uninitialized(self, handler):
        """Test that construction does not register anything."""
        assert handler.state is InitializationState.UNINITIALIZED
        assert handler.is_initialized is False
        assert handler.container_context.filter_registrations == []

    def test_get_servlet_returns_none(self, handler):
        """Test that the framework is never exposed as a servlet."""
        assert handler.get_servlet() is None

    def test_get_container_response_binds_request_and_latch(self, handler):
        """Test that a fresh response container is bound to its request."""
        request = _request("/hello.action")
        latch = CompletionLatch()

        response = handler.get_container_response(request, latch)

        assert isinstance(response, ContainerResponse)
        assert response.request is request
        assert response.latch is latch
        assert response.is_committed is False

    def test_aws_proxy_factory_wires_v1_collaborators(self):
        """Test the REST API handler factory."""
        handler = get_aws_proxy_handler()

        assert handler.container.request_type is AwsProxyRequest
        assert handler.container.response_type is AwsProxyResponse
        assert isinstance(handler.container.request_reader, AwsProxyRequestReader)
        assert handler.container.response_writer.write_single_value_headers is False

    def test_http_api_v2_factory_wires_v2_collaborators(self):
        """Test the HTTP API handler factory."""
        handler = get_http_api_v2_proxy_handler()

        assert handler.container.request_type is HttpApiV2ProxyRequest
        assert isinstance(handler.container.request_reader, AwsHttpApiV2RequestReader)
        assert handler.container.response_writer.write_single_value_headers is True


class TestInitialization:
    """Test dispatch filter registration."""

    def test_initialize_registers_dispatch_filter(self, handler):
        """Test name, patterns and dispatch types of the registration."""
        handler.initialize()

        registration = handler.container_context.get_filter_registration(STRUTS_FILTER_NAME)
        assert registration is not None
        assert isinstance(registration.filter, ActionDispatchFilter)
        assert registration.url_patterns == ["/*"]
        assert registration.dispatcher_types == {
            DispatcherType.REQUEST,
            DispatcherType.ASYNC,
            DispatcherType.INCLUDE,
            DispatcherType.FORWARD,
        }
        assert handler.state is InitializationState.READY

    def test_dispatch_filter_is_placed_before_other_filters(self, handler):
        """Test that filters added by the startup hook run after the dispatch filter."""

        @handler.on_startup
        def register_audit_filter(context):
            context.add_filter("AuditFilter", PassThroughFilter()).add_mapping_for_url_patterns(
                None, True, "/*"
            )

        handler.initialize()

        names = [r.name for r in handler.container_context.filter_registrations]
        assert names == [STRUTS_FILTER_NAME, "AuditFilter"]

    def test_startup_hook_runs_before_filter_registration(self, handler):
        """Test that the hook sees the context without the dispatch filter."""
        seen = []

        def startup(context):
            seen.append(context.get_filter_registration(STRUTS_FILTER_NAME))

        assert handler.on_startup(startup) is startup
        handler.initialize()

        assert seen == [None]

    def test_startup_hook_receives_container_context(self, handler):
        """Test the argument passed to the hook."""
        contexts = []
        handler.on_startup(contexts.append)

        handler.initialize()

        assert contexts == [handler.container_context]

    def test_failed_startup_hook_raises_initialization_error(self, handler):
        """Test that failures are wrapped with their cause."""
        cause = RuntimeError("database unreachable")

        def startup(context):
            raise cause

        handler.on_startup(startup)

        with pytest.raises(ContainerInitializationError) as exc_info:
            handler.initialize()

        assert exc_info.value.cause is cause
        assert exc_info.value.__cause__ is cause
        assert handler.state is InitializationState.UNINITIALIZED
        assert handler.container_context.get_filter_registration(STRUTS_FILTER_NAME) is None

    def test_failed_registration_raises_initialization_error(self, handler):
        """Test that a filter registration failure is wrapped too."""
        with patch.object(
            handler.container_context, "add_filter", side_effect=ValueError("duplicate")
        ):
            with pytest.raises(ContainerInitializationError):
                handler.initialize()

        assert handler.state is InitializationState.UNINITIALIZED

    def test_second_initialize_keeps_ready_handler_intact(self, handler, lambda_context):
        """Test that calling initialize() again does not undo the first registration."""
        handler.initialize()
        registration = handler.container_context.get_filter_registration(STRUTS_FILTER_NAME)

        with pytest.raises(ContainerInitializationError):
            handler.initialize()

        assert handler.state is InitializationState.READY
        assert handler.container_context.get_filter_registration(STRUTS_FILTER_NAME) is registration
        assert handler.container_context.filter_registrations == [registration]

        response = handler.proxy(make_proxy_event(), lambda_context)
        assert response.status_code == 200
        assert handler.container_context.filter_registrations == [registration]

    def test_failed_initialization_keeps_hook_filter_with_same_name(self, handler):
        """Test that rollback only removes the registration the attempt created."""

        @handler.on_startup
        def register_conflicting_filter(context):
            context.add_filter(STRUTS_FILTER_NAME, PassThroughFilter())

        with pytest.raises(ContainerInitializationError):
            handler.initialize()

        registration = handler.container_context.get_filter_registration(STRUTS_FILTER_NAME)
        assert isinstance(registration.filter, PassThroughFilter)
        assert handler.state is InitializationState.UNINITIALIZED

    def test_failed_mapping_removes_own_registration(self, handler):
        """Test that a registration whose mapping failed is rolled back."""
        with patch.object(
            FilterRegistration,
            "add_mapping_for_url_patterns",
            side_effect=ValueError("bad pattern"),
        ):
            with pytest.raises(ContainerInitializationError):
                handler.initialize()

        assert handler.container_context.get_filter_registration(STRUTS_FILTER_NAME) is None
        assert handler.state is InitializationState.UNINITIALIZED

    def test_failed_initialization_is_retried_on_next_request(self, handler, lambda_context):
        """Test that a failed cold start doesn't mark the handler ready."""
        attempts = []

        def flaky_startup(context):
            attempts.append(context)
            if len(attempts) == 1:
                raise RuntimeError("first start fails")

        handler.on_startup(flaky_startup)

        first = handler.proxy(make_proxy_event(), lambda_context)
        assert first.status_code == 502
        assert handler.is_initialized is False

        second = handler.proxy(make_proxy_event(), lambda_context)
        assert second.status_code == 200
        assert second.body == "hello world"
        assert handler.is_initialized is True
        assert len(attempts) == 2

    def test_registration_happens_once_across_requests(self, handler, lambda_context):
        """Test that warm invocations skip initialization."""
        context = handler.container_context
        with patch.object(context, "add_filter", wraps=context.add_filter) as add_filter, \
             patch.object(handler, "initialize", wraps=handler.initialize) as initialize:
            for _ in range(3):
                response = handler.proxy(make_proxy_event(), lambda_context)
                assert response.status_code == 200

        assert initialize.call_count == 1
        assert add_filter.call_count == 1
        assert len(context.filter_registrations) == 1

    def test_concurrent_first_requests_register_once(self, handler):
        """Test that the initialization lock serializes a concurrent cold start."""
        registrations = []

        def slow_startup(context):
            registrations.append(context)
            time.sleep(0.05)

        handler.on_startup(slow_startup)
        barrier = threading.Barrier(4)
        statuses = []

        def invoke():
            barrier.wait()
            statuses.append(handler.proxy(make_proxy_event(), None).status_code)

        threads = [threading.Thread(target=invoke) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(registrations) == 1
        assert statuses == [200, 200, 200, 200]
        assert len(handler.container_context.filter_registrations) == 1


class TestHandleRequest:
    """Test forwarding through the filter chain."""

    def test_handle_request_initializes_and_commits_response(self, handler):
        """Test a direct call on an uninitialized handler."""
        request = _request("/hello.action")
        latch = CompletionLatch()
        response = handler.get_container_response(request, latch)

        handler.handle_request(request, response, None)

        assert handler.is_initialized is True
        assert latch.is_released is True
        assert response.status_code == 200
        assert response.get_body() == b"hello world"

    def test_handle_request_binds_container_context(self, handler):
        """Test that the request learns which context it runs in."""
        request = _request("/hello.action")
        response = handler.get_container_response(request, CompletionLatch())

        handler.handle_request(request, response, None)

        assert request.container_context is handler.container_context

    def test_status_header_overrides_status(self, handler, lambda_context):
        """Test X-Struts-StatusCode: 404 on a 200 response."""
        response = handler.proxy(make_proxy_event(path="/missing.action"), lambda_context)

        assert response.status_code == 404
        assert response.multi_value_headers[HEADER_STRUTS_STATUS_CODE] == ["404"]

    def test_status_header_overrides_status_set_by_filter(self, handler):
        """Test that the header wins over whatever status the chain set."""

        @handler.on_startup
        def add_status_filter(context):
            context.add_filter("ServerError", ServerErrorFilter()).add_mapping_for_url_patterns(
                None, True, "/*"
            )

        request = _request("/anything")
        response = handler.get_container_response(request, CompletionLatch())

        with patch.object(ActionDispatchFilter, "do_filter", PassThroughFilter.do_filter):
            handler.handle_request(request, response, None)

        assert response.status_code == 404

    def test_status_unchanged_without_header(self, handler, lambda_context):
        """Test that the filter's own status stands when no header is set."""
        response = handler.proxy(make_proxy_event(path="/created.action"), lambda_context)

        assert response.status_code == 201
        assert HEADER_STRUTS_STATUS_CODE not in response.multi_value_headers

    def test_malformed_status_header_raises(self, handler):
        """Test that a non-numeric status header is not silently ignored."""
        request = _request("/broken.action")
        response = handler.get_container_response(request, CompletionLatch())

        with pytest.raises(ValueError):
            handler.handle_request(request, response, None)

    def test_malformed_status_header_fails_invocation(self, handler, lambda_context):
        """Test that the invocation loop turns the parsing error into a 502."""
        response = handler.proxy(make_proxy_event(path="/broken.action"), lambda_context)

        assert response.status_code == 502
        assert json.loads(response.body) == {"message": "Gateway timeout"}

    @pytest.mark.parametrize("value", ["4_04", " 404 ", "404.0", "", "٤٠٤"])
    def test_non_decimal_status_header_raises(self, value):
        """Test that only plain base-10 integers are accepted as status."""
        with pytest.raises(ValueError):
            parse_status_code(value)

    @pytest.mark.parametrize("value,expected", [("404", 404), ("+201", 201), ("0302", 302)])
    def test_decimal_status_header_is_parsed(self, value, expected):
        """Test accepted status header values."""
        assert parse_status_code(value) == expected

    def test_underscore_status_header_fails_invocation(self, lambda_context):
        """Test that a header like '4_04' is rejected instead of becoming 404."""

        @Request.application
        def underscore_status_app(request):
            return Response("odd", headers={HEADER_STRUTS_STATUS_CODE: "4_04"})

        handler = get_aws_proxy_handler(application=underscore_status_app)

        response = handler.proxy(make_proxy_event(), lambda_context)

        assert response.status_code == 502

    def test_timers_stop_when_handle_request_fails(self, handler):
        """Test that timers started by a failing request are stopped."""
        timer.enable()
        request = _request("/boom.action")
        response = handler.get_container_response(request, CompletionLatch())

        with pytest.raises(RuntimeError):
            handler.handle_request(request, response, None)

        assert timer.get_times()[TIMER_STRUTS_HANDLE_REQUEST].duration_ms is not None
        assert timer.get_times()[TIMER_STRUTS_COLD_START_INIT].duration_ms is not None

    def test_cold_start_timer_stops_when_initialization_fails(self, handler):
        """Test the cold start timer on a failed initialization."""
        timer.enable()

        def startup(context):
            raise RuntimeError("database unreachable")

        handler.on_startup(startup)

        with pytest.raises(ContainerInitializationError):
            handler.initialize()

        assert timer.get_times()[TIMER_STRUTS_COLD_START_INIT].duration_ms is not None

    def test_framework_exception_propagates_from_handle_request(self, handler):
        """Test that dispatch failures are not swallowed by the adapter."""
        request = _request("/boom.action")
        response = handler.get_container_response(request, CompletionLatch())

        with pytest.raises(RuntimeError, match="action failed"):
            handler.handle_request(request, response, None)


class TestEndToEnd:
    """End-to-end scenarios through proxy()."""

    def test_first_request_on_fresh_handler(self, lambda_context):
        """Test cold start: register once, dispatch, keep the framework's status."""
        handler = get_aws_proxy_handler(application=action_app)
        context = handler.container_context

        with patch.object(context, "add_filter", wraps=context.add_filter) as add_filter:
            response = handler.proxy(
                make_proxy_event(query={"name": "struts"}), lambda_context
            )

        add_filter.assert_called_once()
        assert response.status_code == 200
        assert response.body == "hello struts"
        assert response.multi_value_headers["Content-Type"] == ["text/plain; charset=utf-8"]
        assert response.is_base64_encoded is False

    def test_two_sequential_requests(self, lambda_context):
        """Test that only the first request initializes."""
        handler = get_aws_proxy_handler(application=action_app)

        with patch.object(handler, "initialize", wraps=handler.initialize) as initialize:
            handler.proxy(make_proxy_event(), lambda_context)
            assert initialize.call_count == 1
            handler.proxy(make_proxy_event(path="/created.action"), lambda_context)
            assert initialize.call_count == 1

    def test_http_api_v2_request(self, lambda_context):
        """Test a full HTTP API round trip with cookies."""
        handler = get_http_api_v2_proxy_handler(application=action_app)

        response = handler.proxy(make_http_api_v2_event(path="/login.action"), lambda_context)
        payload = response.to_payload()

        assert payload["statusCode"] == 200
        assert payload["body"] == "welcome"
        assert len(payload["cookies"]) == 2
        assert payload["cookies"][0].startswith("JSESSIONID=abc123")
        assert "multiValueHeaders" not in payload

    def test_application_from_config(self, lambda_context):
        """Test that the dispatch filter falls back to the configured import string."""
        from core.config_schema import ContainerConfig

        handler = get_aws_proxy_handler(
            config=ContainerConfig(application="wsgiref.simple_server:demo_app")
        )

        response = handler.proxy(make_proxy_event(path="/"), lambda_context)

        assert response.status_code == 200
        assert response.body.startswith("Hello world!")
