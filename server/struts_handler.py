"""Lambda container handler for the Struts-style action framework.

On the first invocation in an execution environment the handler registers
the framework's dispatch filter on its container context. Every invocation
is then forwarded through the filter chain, and the framework's
X-Struts-StatusCode header, when present, overrides the response status.
"""

import logging
import re
import threading
from enum import Enum
from typing import IO, Any, Callable, Optional, Type

from pydantic import BaseModel

from core import timer
from core.config_schema import ContainerConfig
from core.container import ContainerAdapter, LambdaContainerHandler
from core.exceptions import ContainerInitializationError
from core.interfaces import (
    AwsProxyRequest,
    AwsProxyResponse,
    ExceptionHandler,
    HttpApiV2ProxyRequest,
    LambdaContext,
    RequestReader,
    ResponseWriter,
    SecurityContextWriter,
)
from core.servlet import (
    CompletionLatch,
    ContainerContext,
    ContainerRequest,
    ContainerResponse,
    DispatcherType,
    FilterRegistration,
)
from server.adapters.aws_lambda import (
    AwsHttpApiV2RequestReader,
    AwsHttpApiV2SecurityContextWriter,
    AwsProxyExceptionHandler,
    AwsProxyRequestReader,
    AwsProxyResponseWriter,
    AwsProxySecurityContextWriter,
)
from server.dispatch_filter import APPLICATION_ATTRIBUTE, ActionDispatchFilter

logger = logging.getLogger(__name__)

HEADER_STRUTS_STATUS_CODE = "X-Struts-StatusCode"
STRUTS_FILTER_NAME = "StrutsFilter"

TIMER_STRUTS_CONTAINER_CONSTRUCTOR = "STRUTS_CONTAINER_CONSTRUCTOR"
TIMER_STRUTS_HANDLE_REQUEST = "STRUTS_HANDLE_REQUEST"
TIMER_STRUTS_COLD_START_INIT = "STRUTS_COLD_START_INIT"

STRUTS_DISPATCHER_TYPES = frozenset(
    {
        DispatcherType.REQUEST,
        DispatcherType.ASYNC,
        DispatcherType.INCLUDE,
        DispatcherType.FORWARD,
    }
)

StartupHandler = Callable[[ContainerContext], None]

_STATUS_CODE_PATTERN = re.compile(r"[+-]?[0-9]+")


def parse_status_code(value: str) -> int:
    """Parse a status header value as a plain base-10 integer.

    Raises:
        ValueError: If the value has whitespace, underscores or non-digits
    """
    if not _STATUS_CODE_PATTERN.fullmatch(value):
        raise ValueError(f"Invalid {HEADER_STRUTS_STATUS_CODE} header value: {value!r}")
    return int(value)


class InitializationState(str, Enum):
    """Dispatch filter registration state of a handler."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class StrutsLambdaContainerHandler(ContainerAdapter):
    """Initializes the action dispatch filter and proxies requests to it."""

    def __init__(
        self,
        request_type: Type[BaseModel],
        response_type: Type[AwsProxyResponse],
        request_reader: RequestReader,
        response_writer: ResponseWriter,
        security_context_writer: SecurityContextWriter,
        exception_handler: ExceptionHandler,
        config: Optional[ContainerConfig] = None,
    ) -> None:
        timer.start(TIMER_STRUTS_CONTAINER_CONSTRUCTOR)
        self.config = config or ContainerConfig()
        self.container_context = ContainerContext(self.config)
        self.startup_handler: Optional[StartupHandler] = None
        self.container = LambdaContainerHandler(
            self,
            request_type,
            response_type,
            request_reader,
            response_writer,
            security_context_writer,
            exception_handler,
            config=self.config,
        )
        self._state = InitializationState.UNINITIALIZED
        # Re-entrant: handle_request holds it while calling initialize()
        self._init_lock = threading.RLock()
        timer.stop(TIMER_STRUTS_CONTAINER_CONSTRUCTOR)

    @property
    def state(self) -> InitializationState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state is InitializationState.READY

    def on_startup(self, startup_handler: StartupHandler) -> StartupHandler:
        """Register a hook run with the container context before the filter.

        Returns the hook unchanged so this can be used as a decorator.
        """
        self.startup_handler = startup_handler
        return startup_handler

    def proxy(
        self, event: Any, lambda_context: Optional[LambdaContext] = None
    ) -> AwsProxyResponse:
        return self.container.proxy(event, lambda_context)

    def proxy_stream(
        self,
        input_stream: IO[bytes],
        output_stream: IO[bytes],
        lambda_context: Optional[LambdaContext] = None,
    ) -> None:
        self.container.proxy_stream(input_stream, output_stream, lambda_context)

    def get_container_response(
        self, request: ContainerRequest, latch: CompletionLatch
    ) -> ContainerResponse:
        return ContainerResponse(request, latch)

    def handle_request(
        self,
        request: ContainerRequest,
        response: ContainerResponse,
        lambda_context: Optional[LambdaContext],
    ) -> None:
        timer.start(TIMER_STRUTS_HANDLE_REQUEST)
        try:
            if self._state is not InitializationState.READY:
                with self._init_lock:
                    if self._state is not InitializationState.READY:
                        self.initialize()

            if isinstance(request, ContainerRequest):
                request.container_context = self.container_context

            chain = self.container_context.get_filter_chain(request)
            chain.do_filter(request, response)
            if not response.is_committed:
                response.flush_buffer()

            response_status_code = response.get_header(HEADER_STRUTS_STATUS_CODE)
            if response_status_code is not None:
                response.set_status(parse_status_code(response_status_code))
        finally:
            timer.stop(TIMER_STRUTS_HANDLE_REQUEST)

    def initialize(self) -> None:
        """Run the startup hook and register the dispatch filter.

        A failed attempt removes only the registration it created and puts
        the handler back in the state it started from.

        Raises:
            ContainerInitializationError: If the hook or the registration fails
        """
        logger.info("Initialize Struts Lambda Application ...")
        timer.start(TIMER_STRUTS_COLD_START_INIT)
        with self._init_lock:
            previous_state = self._state
            self._state = InitializationState.INITIALIZING
            registration: Optional[FilterRegistration] = None
            try:
                if self.startup_handler is not None:
                    self.startup_handler(self.container_context)
                registration = self.container_context.add_filter(
                    STRUTS_FILTER_NAME, ActionDispatchFilter()
                )
                registration.add_mapping_for_url_patterns(
                    STRUTS_DISPATCHER_TYPES, False, "/*"
                )
            except Exception as e:
                self._state = previous_state
                if (
                    registration is not None
                    and self.container_context.get_filter_registration(STRUTS_FILTER_NAME)
                    is registration
                ):
                    self.container_context.remove_filter(STRUTS_FILTER_NAME)
                logger.error(f"Failed to initialize Struts container: {e}", exc_info=True)
                raise ContainerInitializationError(
                    "Could not initialize Struts container", e
                ) from e
            finally:
                timer.stop(TIMER_STRUTS_COLD_START_INIT)

            self._state = InitializationState.READY
        logger.info("... initialize of Struts Lambda Application completed!")

    def get_servlet(self) -> None:
        """The framework is driven by a filter only, never by a servlet."""
        return None


def get_aws_proxy_handler(
    application: Optional[Callable[..., Any]] = None,
    config: Optional[ContainerConfig] = None,
) -> StrutsLambdaContainerHandler:
    """Handler for REST API (payload v1) and ALB proxy events.

    Args:
        application: WSGI application to dispatch to; when omitted the
            'application' import string from config is used
        config: Container configuration
    """
    handler = StrutsLambdaContainerHandler(
        AwsProxyRequest,
        AwsProxyResponse,
        AwsProxyRequestReader(),
        AwsProxyResponseWriter(),
        AwsProxySecurityContextWriter(),
        AwsProxyExceptionHandler(),
        config=config,
    )
    if application is not None:
        handler.container_context.set_attribute(APPLICATION_ATTRIBUTE, application)
    return handler


def get_http_api_v2_proxy_handler(
    application: Optional[Callable[..., Any]] = None,
    config: Optional[ContainerConfig] = None,
) -> StrutsLambdaContainerHandler:
    """Handler for HTTP API (payload v2) and function URL events.

    Args:
        application: WSGI application to dispatch to; when omitted the
            'application' import string from config is used
        config: Container configuration
    """
    handler = StrutsLambdaContainerHandler(
        HttpApiV2ProxyRequest,
        AwsProxyResponse,
        AwsHttpApiV2RequestReader(),
        AwsProxyResponseWriter(write_single_value_headers=True),
        AwsHttpApiV2SecurityContextWriter(),
        AwsProxyExceptionHandler(),
        config=config,
    )
    if application is not None:
        handler.container_context.set_attribute(APPLICATION_ATTRIBUTE, application)
    return handler
