"""Run the Struts Lambda container locally (no Lambda needed).

Each HTTP request is turned into the Lambda event the configured API would
send and is run through the same container handler the Lambda entrypoint
uses, so local responses match deployed ones.

Usage:
    python -m server.local_server --application shop.web:app --port 8000
"""

import argparse
import asyncio
import base64
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web

from core.logging_utils import configure_json_logging
from core.validators import load_config
from server.struts_handler import (
    StrutsLambdaContainerHandler,
    get_aws_proxy_handler,
    get_http_api_v2_proxy_handler,
)

logger = logging.getLogger(__name__)

HANDLER_KEY = web.AppKey("container_handler", StrutsLambdaContainerHandler)
EVENT_TYPE_KEY = web.AppKey("event_type", str)

# aiohttp computes these itself from the body it sends
_HOP_HEADERS = {"content-length", "transfer-encoding", "connection"}


class LocalLambdaContext:
    """Stand-in for the Lambda context object."""

    def __init__(self, timeout_ms: int = 30000) -> None:
        self.aws_request_id = str(uuid.uuid4())
        self.function_name = "struts-lambda-local"
        self.memory_limit_in_mb = 1024
        self._deadline = time.monotonic() + timeout_ms / 1000

    def get_remaining_time_in_millis(self) -> int:
        return max(0, int((self._deadline - time.monotonic()) * 1000))


def _encode_body(body: bytes) -> Tuple[Optional[str], bool]:
    if not body:
        return None, False
    try:
        return body.decode("utf-8"), False
    except UnicodeDecodeError:
        return base64.b64encode(body).decode("ascii"), True


def build_http_api_v2_event(request: web.BaseRequest, body: bytes) -> Dict[str, Any]:
    """HTTP API (payload v2) event for a local request."""
    encoded_body, is_base64_encoded = _encode_body(body)
    headers: Dict[str, str] = {}
    for name, value in request.headers.items():
        if name.lower() == "cookie":
            continue
        key = name.lower()
        headers[key] = f"{headers[key]},{value}" if key in headers else value

    cookie_header = request.headers.get("Cookie")
    return {
        "version": "2.0",
        "routeKey": "$default",
        "rawPath": request.path,
        "rawQueryString": request.query_string,
        "cookies": [c.strip() for c in cookie_header.split(";")] if cookie_header else None,
        "headers": headers,
        "requestContext": {
            "http": {
                "method": request.method,
                "path": request.path,
                "protocol": f"HTTP/{request.version.major}.{request.version.minor}",
                "sourceIp": request.remote or "127.0.0.1",
            },
            "stage": "$default",
            "requestId": str(uuid.uuid4()),
        },
        "body": encoded_body,
        "isBase64Encoded": is_base64_encoded,
    }


def build_proxy_event(request: web.BaseRequest, body: bytes) -> Dict[str, Any]:
    """REST API (payload v1) event for a local request."""
    encoded_body, is_base64_encoded = _encode_body(body)
    multi_value_headers: Dict[str, List[str]] = {}
    for name, value in request.headers.items():
        multi_value_headers.setdefault(name, []).append(value)

    multi_value_query: Dict[str, List[str]] = {}
    for name, value in request.query.items():
        multi_value_query.setdefault(name, []).append(value)

    return {
        "resource": "/{proxy+}",
        "path": request.path,
        "httpMethod": request.method,
        "multiValueHeaders": multi_value_headers,
        "multiValueQueryStringParameters": multi_value_query or None,
        "requestContext": {
            "stage": "local",
            "protocol": f"HTTP/{request.version.major}.{request.version.minor}",
            "identity": {"sourceIp": request.remote or "127.0.0.1"},
            "requestId": str(uuid.uuid4()),
        },
        "body": encoded_body,
        "isBase64Encoded": is_base64_encoded,
    }


async def handle_request(request: web.Request) -> web.Response:
    """Proxy one local HTTP request through the container handler."""
    container_handler = request.app[HANDLER_KEY]
    body = await request.read()

    if request.app[EVENT_TYPE_KEY] == "http_api_v2":
        event = build_http_api_v2_event(request, body)
    else:
        event = build_proxy_event(request, body)

    # proxy() blocks on the WSGI call and the completion latch
    reply = await asyncio.to_thread(container_handler.proxy, event, LocalLambdaContext())

    headers: List[Tuple[str, str]] = []
    for name, value in (reply.headers or {}).items():
        headers.append((name, value))
    for name, values in (reply.multi_value_headers or {}).items():
        headers.extend((name, value) for value in values)
    for cookie in reply.cookies or []:
        headers.append(("Set-Cookie", cookie))
    headers = [(k, v) for k, v in headers if k.lower() not in _HOP_HEADERS]

    if reply.is_base64_encoded:
        response_body = base64.b64decode(reply.body or "")
    else:
        response_body = (reply.body or "").encode("utf-8")

    return web.Response(status=reply.status_code, body=response_body, headers=headers)


def create_app(
    container_handler: StrutsLambdaContainerHandler, event_type: str = "http_api_v2"
) -> web.Application:
    """aiohttp application forwarding every path and method to the handler."""
    app = web.Application()
    app[HANDLER_KEY] = container_handler
    app[EVENT_TYPE_KEY] = event_type
    app.router.add_route("*", "/{tail:.*}", handle_request)
    return app


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the Struts Lambda container locally")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--application", help="WSGI application import string (overrides config)"
    )
    parser.add_argument(
        "--event-type",
        choices=["proxy", "http_api_v2"],
        help="Lambda event shape to emulate (overrides config)",
    )
    args = parser.parse_args(argv)

    config = load_config()
    overrides: Dict[str, Any] = {}
    if args.application:
        overrides["application"] = args.application
    if args.event_type:
        overrides["event_type"] = args.event_type
    if overrides:
        config = config.model_validate({**config.model_dump(), **overrides})

    configure_json_logging(level=config.logging.level, pretty=True)

    if config.event_type == "http_api_v2":
        container_handler = get_http_api_v2_proxy_handler(config=config)
    else:
        container_handler = get_aws_proxy_handler(config=config)

    logger.info(
        f"Local Struts Lambda container listening on http://{args.host}:{args.port}",
        extra={"event_type": config.event_type, "application": config.application},
    )
    web.run_app(create_app(container_handler, config.event_type), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
