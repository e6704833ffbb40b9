"""AWS Lambda collaborators for the container.

Readers transform API Gateway / ALB / function URL events into
ContainerRequests, the writer transforms completed ContainerResponses back
into the reply payload, and the security context writers and exception
handler cover authentication data and failures.

WSGI environ encoding is left to werkzeug's EnvironBuilder; the readers only
pick the relevant fields out of each event shape.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote_plus, urlencode

from werkzeug.datastructures import Headers
from werkzeug.http import parse_options_header
from werkzeug.test import EnvironBuilder

from core.config_schema import ContainerConfig
from core.exceptions import (
    InternalServerError,
    InvalidRequestEventError,
    InvalidResponseObjectError,
)
from core.interfaces import (
    AwsProxyRequest,
    AwsProxyResponse,
    ExceptionHandler,
    HttpApiV2ProxyRequest,
    LambdaContext,
    RequestReader,
    ResponseWriter,
    SecurityContext,
    SecurityContextWriter,
)
from core.servlet import ContainerRequest, ContainerResponse

logger = logging.getLogger(__name__)

# WSGI environ keys the readers populate for the wrapped application
AWS_EVENT_ENVIRON_KEY = "aws.event"
AWS_CONTEXT_ENVIRON_KEY = "aws.context"
AWS_REQUEST_CONTEXT_ENVIRON_KEY = "aws.request_context"
AWS_STAGE_VARIABLES_ENVIRON_KEY = "aws.stage_variables"
AWS_SECURITY_CONTEXT_ENVIRON_KEY = "aws.security_context"

INTERNAL_SERVER_ERROR = "Internal Server Error"
GATEWAY_TIMEOUT_ERROR = "Gateway timeout"

TEXT_CONTENT_TYPES = {
    "application/json",
    "application/javascript",
    "application/xml",
    "application/x-www-form-urlencoded",
    "image/svg+xml",
}


def _decode_body(body: Any, is_base64_encoded: bool, charset: str) -> bytes:
    """Event body as bytes."""
    if body is None:
        return b""

    if isinstance(body, (dict, list)):
        body = json.dumps(body)

    if is_base64_encoded:
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidRequestEventError(f"Invalid base64-encoded body: {e}") from e

    return body.encode(charset)


def _strip_base_path(path: str, config: ContainerConfig) -> str:
    if not (config.strip_base_path and config.service_base_path):
        return path
    base = config.service_base_path.rstrip("/")
    if path == base or path.startswith(base + "/"):
        return path[len(base):] or "/"
    return path


def _collapse_headers(headers: Headers) -> Headers:
    """One entry per header name; repeated values comma joined."""
    collapsed = Headers()
    for name in dict.fromkeys(key.lower() for key, _ in headers):
        values = headers.getlist(name)
        separator = "; " if name == "cookie" else ", "
        original_name = next(key for key, _ in headers if key.lower() == name)
        collapsed.add(original_name, separator.join(values))
    return collapsed


def _build_request(
    method: str,
    path: str,
    query_string: str,
    headers: Headers,
    body: bytes,
    source_ip: Optional[str],
    protocol: Optional[str],
    event: Any,
    request_context: Dict[str, Any],
    stage_variables: Optional[Dict[str, Any]],
    security_context: Optional[SecurityContext],
    lambda_context: Optional[LambdaContext],
) -> ContainerRequest:
    scheme = headers.get("X-Forwarded-Proto", "https").split(",")[0].strip()
    host = headers.get("Host", "localhost")

    environ_overrides = {
        "SERVER_PROTOCOL": protocol or "HTTP/1.1",
        AWS_EVENT_ENVIRON_KEY: event,
        AWS_CONTEXT_ENVIRON_KEY: lambda_context,
        AWS_REQUEST_CONTEXT_ENVIRON_KEY: request_context,
        AWS_STAGE_VARIABLES_ENVIRON_KEY: stage_variables or {},
        AWS_SECURITY_CONTEXT_ENVIRON_KEY: security_context,
    }
    if source_ip:
        environ_overrides["REMOTE_ADDR"] = source_ip

    builder = EnvironBuilder(
        path=path,
        base_url=f"{scheme}://{host}",
        query_string=query_string,
        method=method.upper(),
        headers=_collapse_headers(headers),
        data=body,
        environ_overrides=environ_overrides,
    )
    try:
        environ = builder.get_environ()
    finally:
        builder.close()

    return ContainerRequest(
        environ, security_context=security_context, lambda_context=lambda_context
    )


class AwsProxyRequestReader(RequestReader):
    """Reads REST API (payload v1) and ALB proxy events."""

    def read_request(
        self,
        event: AwsProxyRequest,
        security_context: Optional[SecurityContext],
        lambda_context: Optional[LambdaContext],
        config: ContainerConfig,
    ) -> ContainerRequest:
        if not event.http_method:
            raise InvalidRequestEventError("Event is missing httpMethod")

        request_context = event.request_context or {}

        headers = Headers()
        if event.multi_value_headers:
            for name, values in event.multi_value_headers.items():
                for value in values or []:
                    headers.add(name, value)
        elif event.headers:
            for name, value in event.headers.items():
                if value is not None:
                    headers.add(name, value)

        if event.multi_value_query_string_parameters:
            query_pairs = [
                (name, value)
                for name, values in event.multi_value_query_string_parameters.items()
                for value in values or []
            ]
        else:
            query_pairs = [
                (name, value)
                for name, value in (event.query_string_parameters or {}).items()
                if value is not None
            ]

        # ALB passes query parameters through still percent-encoded
        if event.is_alb_event:
            query_pairs = [
                (unquote_plus(name), unquote_plus(value)) for name, value in query_pairs
            ]

        # REST API paths arrive decoded; EnvironBuilder decodes PATH_INFO again
        path = quote(_strip_base_path(event.path or "/", config), safe="/")

        return _build_request(
            method=event.http_method,
            path=path,
            query_string=urlencode(query_pairs),
            headers=headers,
            body=_decode_body(
                event.body, event.is_base64_encoded, config.default_content_charset
            ),
            source_ip=(request_context.get("identity") or {}).get("sourceIp"),
            protocol=request_context.get("protocol"),
            event=event,
            request_context=request_context,
            stage_variables=event.stage_variables,
            security_context=security_context,
            lambda_context=lambda_context,
        )


class AwsHttpApiV2RequestReader(RequestReader):
    """Reads HTTP API (payload v2) and function URL events."""

    def read_request(
        self,
        event: HttpApiV2ProxyRequest,
        security_context: Optional[SecurityContext],
        lambda_context: Optional[LambdaContext],
        config: ContainerConfig,
    ) -> ContainerRequest:
        request_context = event.request_context or {}
        http_context = request_context.get("http") or {}

        method = http_context.get("method")
        if not method:
            raise InvalidRequestEventError("Event is missing requestContext.http.method")

        headers = Headers()
        for name, value in (event.headers or {}).items():
            if value is not None:
                headers.add(name, value)
        if event.cookies:
            headers.set("Cookie", "; ".join(event.cookies))

        path = _strip_base_path(event.raw_path or http_context.get("path") or "/", config)

        return _build_request(
            method=method,
            path=path,
            query_string=event.raw_query_string,
            headers=headers,
            body=_decode_body(
                event.body, event.is_base64_encoded, config.default_content_charset
            ),
            source_ip=http_context.get("sourceIp"),
            protocol=http_context.get("protocol"),
            event=event,
            request_context=request_context,
            stage_variables=event.stage_variables,
            security_context=security_context,
            lambda_context=lambda_context,
        )


def is_binary(content_type: Optional[str]) -> bool:
    """Whether a body of this content type must be base64 encoded."""
    if not content_type:
        return False
    mimetype, _ = parse_options_header(content_type)
    mimetype = mimetype.lower()
    if mimetype.startswith("text/") or mimetype in TEXT_CONTENT_TYPES:
        return False
    if mimetype.endswith("+json") or mimetype.endswith("+xml"):
        return False
    return True


class AwsProxyResponseWriter(ResponseWriter):
    """Writes the reply for proxy events.

    Payload v1 replies carry multiValueHeaders. Payload v2 replies
    (write_single_value_headers) carry comma joined headers and move
    Set-Cookie values to the cookies list.
    """

    def __init__(self, write_single_value_headers: bool = False) -> None:
        self.write_single_value_headers = write_single_value_headers

    def write_response(
        self,
        container_response: ContainerResponse,
        lambda_context: Optional[LambdaContext],
    ) -> AwsProxyResponse:
        if container_response is None:
            raise InvalidResponseObjectError("Null response object")

        body_bytes = container_response.get_body()
        body: str = ""
        is_base64_encoded = False
        if body_bytes:
            if is_binary(container_response.content_type):
                body = base64.b64encode(body_bytes).decode("ascii")
                is_base64_encoded = True
            else:
                try:
                    body = body_bytes.decode(container_response.charset or "utf-8")
                except (UnicodeDecodeError, LookupError):
                    body = base64.b64encode(body_bytes).decode("ascii")
                    is_base64_encoded = True

        response = AwsProxyResponse(
            status_code=container_response.status_code,
            body=body,
            is_base64_encoded=is_base64_encoded,
        )

        if self.write_single_value_headers:
            single_value_headers: Dict[str, str] = {}
            cookies: List[str] = []
            for name, value in container_response.headers.items():
                if name.lower() == "set-cookie":
                    cookies.append(value)
                elif name in single_value_headers:
                    single_value_headers[name] = f"{single_value_headers[name]},{value}"
                else:
                    single_value_headers[name] = value
            response.headers = single_value_headers
            if cookies:
                response.cookies = cookies
        else:
            multi_value_headers: Dict[str, List[str]] = {}
            for name, value in container_response.headers.items():
                multi_value_headers.setdefault(name, []).append(value)
            response.multi_value_headers = multi_value_headers

        request = container_response.request
        event = request.environ.get(AWS_EVENT_ENVIRON_KEY) if request is not None else None
        if isinstance(event, AwsProxyRequest) and event.is_alb_event:
            response.status_description = container_response.status

        return response


class AwsProxySecurityContextWriter(SecurityContextWriter):
    """Security context from a REST API / ALB request context."""

    def write_security_context(
        self, event: AwsProxyRequest, lambda_context: Optional[LambdaContext]
    ) -> SecurityContext:
        request_context = event.request_context or {}
        authorizer = request_context.get("authorizer") or {}
        identity = request_context.get("identity") or {}

        if authorizer.get("claims"):
            claims = authorizer["claims"]
            return SecurityContext(
                auth_scheme="COGNITO_USER_POOL",
                user_principal=claims.get("sub") or claims.get("cognito:username"),
                claims=claims,
            )
        if authorizer.get("principalId"):
            return SecurityContext(
                auth_scheme="CUSTOM_AUTHORIZER",
                user_principal=authorizer["principalId"],
                claims=authorizer,
            )
        if identity.get("accessKey") or identity.get("userArn"):
            return SecurityContext(
                auth_scheme="AWS_IAM",
                user_principal=identity.get("userArn") or identity.get("user"),
            )
        return SecurityContext()


class AwsHttpApiV2SecurityContextWriter(SecurityContextWriter):
    """Security context from an HTTP API request context."""

    def write_security_context(
        self, event: HttpApiV2ProxyRequest, lambda_context: Optional[LambdaContext]
    ) -> SecurityContext:
        request_context = event.request_context or {}
        authorizer = request_context.get("authorizer") or {}

        if authorizer.get("jwt"):
            claims = authorizer["jwt"].get("claims") or {}
            return SecurityContext(
                auth_scheme="JWT", user_principal=claims.get("sub"), claims=claims
            )
        if authorizer.get("lambda") is not None:
            lambda_claims = authorizer["lambda"] or {}
            return SecurityContext(
                auth_scheme="CUSTOM_AUTHORIZER",
                user_principal=lambda_claims.get("principalId"),
                claims=lambda_claims,
            )
        if authorizer.get("iam"):
            iam = authorizer["iam"]
            return SecurityContext(auth_scheme="AWS_IAM", user_principal=iam.get("userArn"))
        return SecurityContext()


class AwsProxyExceptionHandler(ExceptionHandler):
    """Maps container failures to JSON error replies.

    Malformed events and internal container faults become 500s; anything the
    framework raised becomes a 502.
    """

    def handle(self, exc: BaseException) -> AwsProxyResponse:
        logger.error(
            f"Called exception handler for: {exc}",
            extra={"error_type": type(exc).__name__},
        )

        if isinstance(exc, (InvalidRequestEventError, InternalServerError)):
            status_code, message = 500, INTERNAL_SERVER_ERROR
        else:
            status_code, message = 502, GATEWAY_TIMEOUT_ERROR

        return AwsProxyResponse(
            status_code=status_code,
            headers={"Content-Type": "application/json"},
            body=json.dumps({"message": message}),
        )
