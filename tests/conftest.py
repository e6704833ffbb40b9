"""Shared fixtures: a small action application and Lambda event builders."""

import json
from typing import Any, Dict, Optional

import pytest
from werkzeug.wrappers import Request, Response

from core import timer


@Request.application
def action_app(request: Request) -> Response:
    """Stand-in for the wrapped action framework."""
    if request.path == "/missing.action":
        # The framework answers 200 but signals the real status in a header
        return Response("not found", headers={"X-Struts-StatusCode": "404"})
    if request.path == "/broken.action":
        return Response("broken", headers={"X-Struts-StatusCode": "abc"})
    if request.path == "/created.action":
        return Response("created", status=201)
    if request.path == "/logo.action":
        return Response(b"\x89PNG\r\n\x1a\n\x00\xff", mimetype="image/png")
    if request.path == "/login.action":
        response = Response("welcome")
        response.set_cookie("JSESSIONID", "abc123")
        response.set_cookie("theme", "dark")
        return response
    if request.path == "/boom.action":
        raise RuntimeError("action failed")
    if request.path == "/echo.action":
        security_context = request.environ.get("aws.security_context")
        payload = {
            "method": request.method,
            "path": request.path,
            "args": request.args.to_dict(flat=False),
            "body": request.get_data(as_text=True),
            "cookies": dict(request.cookies),
            "remote_addr": request.remote_addr,
            "scheme": request.scheme,
            "host": request.host,
            "principal": getattr(security_context, "user_principal", None),
        }
        return Response(json.dumps(payload), mimetype="application/json")
    return Response(f"hello {request.args.get('name', 'world')}", mimetype="text/plain")


class MockLambdaContext:
    """Mock Lambda context object."""

    def __init__(self, request_id: str = "test-request-id-123") -> None:
        self.aws_request_id = request_id
        self.function_name = "test-function"
        self.memory_limit_in_mb = 512

    def get_remaining_time_in_millis(self) -> int:
        return 30000


def make_proxy_event(
    path: str = "/hello.action",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    query: Optional[Dict[str, str]] = None,
    body: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """REST API (payload v1) proxy event."""
    event = {
        "resource": "/{proxy+}",
        "path": path,
        "httpMethod": method,
        "headers": headers or {"Host": "shop.example.com"},
        "queryStringParameters": query,
        "requestContext": {
            "stage": "prod",
            "protocol": "HTTP/1.1",
            "identity": {"sourceIp": "203.0.113.7"},
        },
        "body": body,
        "isBase64Encoded": False,
    }
    event.update(extra)
    return event


def make_http_api_v2_event(
    path: str = "/hello.action",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    raw_query_string: str = "",
    body: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """HTTP API (payload v2) event."""
    event = {
        "version": "2.0",
        "routeKey": "$default",
        "rawPath": path,
        "rawQueryString": raw_query_string,
        "headers": headers or {"host": "abc123.execute-api.us-east-1.amazonaws.com"},
        "requestContext": {
            "http": {
                "method": method,
                "path": path,
                "protocol": "HTTP/1.1",
                "sourceIp": "198.51.100.4",
            },
            "stage": "$default",
        },
        "body": body,
        "isBase64Encoded": False,
    }
    event.update(extra)
    return event


@pytest.fixture
def lambda_context() -> MockLambdaContext:
    return MockLambdaContext()


@pytest.fixture(autouse=True)
def reset_timers():
    """Keep timer state from leaking between tests."""
    yield
    timer.disable()
    timer.reset()
