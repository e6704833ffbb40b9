"""Generic invocation loop for servlet-style Lambda containers.

LambdaContainerHandler owns everything that does not depend on the wrapped
framework: decoding the event, building the request and response
containers through its collaborators, waiting for the response to complete,
encoding the reply, and routing failures to the exception handler. The
framework-specific part is a ContainerAdapter it is composed with.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import IO, Any, Optional, Type

from pydantic import BaseModel, ValidationError

from core import timer
from core.config_schema import ContainerConfig
from core.exceptions import (
    InternalServerError,
    InvalidRequestEventError,
    InvalidResponseObjectError,
)
from core.interfaces import (
    AwsProxyResponse,
    ExceptionHandler,
    LambdaContext,
    RequestReader,
    ResponseWriter,
    SecurityContextWriter,
)
from core.logging_utils import format_request_log, format_response_log
from core.servlet import CompletionLatch, ContainerRequest, ContainerResponse

logger = logging.getLogger(__name__)

TIMER_PROXY = "CONTAINER_PROXY"
TIMER_READ_REQUEST = "CONTAINER_READ_REQUEST"
TIMER_WRITE_RESPONSE = "CONTAINER_WRITE_RESPONSE"


class ContainerAdapter(ABC):
    """What a framework adapter provides to the invocation loop."""

    @abstractmethod
    def get_container_response(
        self, request: ContainerRequest, latch: CompletionLatch
    ) -> ContainerResponse:
        """Create the response container for a request."""
        pass

    @abstractmethod
    def handle_request(
        self,
        request: ContainerRequest,
        response: ContainerResponse,
        lambda_context: Optional[LambdaContext],
    ) -> None:
        """Run the framework for one request, writing into response."""
        pass

    @abstractmethod
    def initialize(self) -> None:
        """One-time framework setup for the execution environment."""
        pass


def _request_id(lambda_context: Optional[LambdaContext]) -> str:
    return getattr(lambda_context, "aws_request_id", None) or "unknown"


class LambdaContainerHandler:
    """Runs one Lambda invocation through a ContainerAdapter."""

    def __init__(
        self,
        adapter: ContainerAdapter,
        request_type: Type[BaseModel],
        response_type: Type[AwsProxyResponse],
        request_reader: RequestReader,
        response_writer: ResponseWriter,
        security_context_writer: SecurityContextWriter,
        exception_handler: ExceptionHandler,
        config: Optional[ContainerConfig] = None,
    ) -> None:
        self.adapter = adapter
        self.request_type = request_type
        self.response_type = response_type
        self.request_reader = request_reader
        self.response_writer = response_writer
        self.security_context_writer = security_context_writer
        self.exception_handler = exception_handler
        self.config = config or ContainerConfig()

    def _parse_event(self, event: Any) -> BaseModel:
        if isinstance(event, self.request_type):
            return event
        if not isinstance(event, dict):
            raise InvalidRequestEventError(
                f"Unsupported event type: {type(event).__name__}"
            )
        try:
            return self.request_type.model_validate(event)
        except ValidationError as e:
            raise InvalidRequestEventError(
                f"Event is not a valid {self.request_type.__name__}: {e}"
            ) from e

    def proxy(
        self, event: Any, lambda_context: Optional[LambdaContext] = None
    ) -> AwsProxyResponse:
        """Handle one invocation and return the reply payload.

        Never raises: any failure is logged and turned into a reply by the
        exception handler.

        Args:
            event: Raw event dictionary or an instance of the request type
            lambda_context: Lambda context object

        Returns:
            Reply payload
        """
        start_time = time.perf_counter()
        request_id = _request_id(lambda_context)
        timer.start(TIMER_PROXY)

        try:
            timer.start(TIMER_READ_REQUEST)
            request_event = self._parse_event(event)
            security_context = self.security_context_writer.write_security_context(
                request_event, lambda_context
            )
            latch = CompletionLatch()
            container_request = self.request_reader.read_request(
                request_event, security_context, lambda_context, self.config
            )
            timer.stop(TIMER_READ_REQUEST)

            logger.info(
                "Incoming HTTP request",
                extra=format_request_log(
                    request_id=request_id,
                    http_method=container_request.method,
                    request_path=container_request.path,
                    headers=container_request.headers.items(),
                    body_size=container_request.content_length or 0,
                    lambda_context=lambda_context,
                ),
            )

            container_response = self.adapter.get_container_response(
                container_request, latch
            )
            self.adapter.handle_request(
                container_request, container_response, lambda_context
            )

            if not latch.wait(self.config.latch_timeout_seconds):
                raise InternalServerError(
                    f"Response was not completed within {self.config.latch_timeout_seconds}s"
                )

            timer.start(TIMER_WRITE_RESPONSE)
            response = self.response_writer.write_response(
                container_response, lambda_context
            )
            if not isinstance(response, self.response_type):
                raise InvalidResponseObjectError(
                    f"Response writer returned {type(response).__name__}, "
                    f"expected {self.response_type.__name__}"
                )
            timer.stop(TIMER_WRITE_RESPONSE)

            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "HTTP request processed successfully",
                extra=format_response_log(
                    request_id=request_id,
                    status_code=container_response.status_code,
                    headers=container_response.headers.items(),
                    body_size=len(container_response.get_body()),
                    duration_ms=duration_ms,
                    success=True,
                ),
            )
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"Error while handling request {request_id}: {e}",
                extra={
                    "request_id": request_id,
                    "error_type": type(e).__name__,
                    "duration_ms": round(duration_ms, 2),
                },
                exc_info=True,
            )
            return self.exception_handler.handle(e)

        finally:
            timer.stop(TIMER_PROXY)

    def proxy_stream(
        self,
        input_stream: IO[bytes],
        output_stream: IO[bytes],
        lambda_context: Optional[LambdaContext] = None,
    ) -> None:
        """Handle one invocation from a JSON input stream.

        Args:
            input_stream: Stream holding the JSON event
            output_stream: Binary stream the JSON reply is written to
            lambda_context: Lambda context object
        """
        try:
            event = json.load(input_stream)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(
                f"Could not deserialize request event: {e}",
                extra={"request_id": _request_id(lambda_context)},
            )
            error = InvalidRequestEventError(f"Could not deserialize request event: {e}")
            error.__cause__ = e
            response = self.exception_handler.handle(error)
        else:
            response = self.proxy(event, lambda_context)

        output_stream.write(json.dumps(response.to_payload()).encode("utf-8"))
        output_stream.flush()
