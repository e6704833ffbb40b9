"""Core interfaces and data models for the Lambda container.

This module defines the event and response models exchanged with the Lambda
runtime, and the abstract collaborators the invocation loop is composed of:
request readers, response writers, security context writers and exception
handlers.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from core.config_schema import ContainerConfig
from core.servlet import ContainerRequest, ContainerResponse


class LambdaContext(Protocol):
    """Protocol for the AWS Lambda context object."""

    aws_request_id: str
    function_name: Optional[str]
    memory_limit_in_mb: Optional[int]


class AwsProxyRequest(BaseModel):
    """REST API (payload v1) or Application Load Balancer proxy event."""

    resource: Optional[str] = None
    path: Optional[str] = None
    http_method: Optional[str] = Field(None, alias="httpMethod")
    headers: Optional[Dict[str, Optional[str]]] = None
    multi_value_headers: Optional[Dict[str, Optional[List[str]]]] = Field(
        None, alias="multiValueHeaders"
    )
    query_string_parameters: Optional[Dict[str, Optional[str]]] = Field(
        None, alias="queryStringParameters"
    )
    multi_value_query_string_parameters: Optional[Dict[str, Optional[List[str]]]] = Field(
        None, alias="multiValueQueryStringParameters"
    )
    path_parameters: Optional[Dict[str, Any]] = Field(None, alias="pathParameters")
    stage_variables: Optional[Dict[str, Any]] = Field(None, alias="stageVariables")
    request_context: Optional[Dict[str, Any]] = Field(None, alias="requestContext")
    body: Optional[Any] = None
    is_base64_encoded: bool = Field(False, alias="isBase64Encoded")

    @property
    def is_alb_event(self) -> bool:
        return bool(self.request_context and "elb" in self.request_context)

    class Config:
        """Pydantic config."""

        populate_by_name = True
        extra = "allow"


class HttpApiV2ProxyRequest(BaseModel):
    """HTTP API (payload v2) event, also used by Lambda function URLs."""

    version: Optional[str] = None
    route_key: Optional[str] = Field(None, alias="routeKey")
    raw_path: Optional[str] = Field(None, alias="rawPath")
    raw_query_string: str = Field("", alias="rawQueryString")
    cookies: Optional[List[str]] = None
    headers: Optional[Dict[str, Optional[str]]] = None
    query_string_parameters: Optional[Dict[str, Optional[str]]] = Field(
        None, alias="queryStringParameters"
    )
    path_parameters: Optional[Dict[str, Any]] = Field(None, alias="pathParameters")
    stage_variables: Optional[Dict[str, Any]] = Field(None, alias="stageVariables")
    request_context: Optional[Dict[str, Any]] = Field(None, alias="requestContext")
    body: Optional[Any] = None
    is_base64_encoded: bool = Field(False, alias="isBase64Encoded")

    class Config:
        """Pydantic config."""

        populate_by_name = True
        extra = "allow"


class AwsProxyResponse(BaseModel):
    """Reply payload returned to API Gateway, ALB or a function URL."""

    status_code: int = Field(200, alias="statusCode")
    status_description: Optional[str] = Field(None, alias="statusDescription")
    headers: Optional[Dict[str, str]] = None
    multi_value_headers: Optional[Dict[str, List[str]]] = Field(
        None, alias="multiValueHeaders"
    )
    cookies: Optional[List[str]] = None
    body: Optional[str] = None
    is_base64_encoded: bool = Field(False, alias="isBase64Encoded")

    def to_payload(self) -> Dict[str, Any]:
        """Serialize with the runtime's field names, dropping unset fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

    class Config:
        """Pydantic config."""

        populate_by_name = True


class SecurityContext(BaseModel):
    """Authentication details derived from the event's authorizer data."""

    auth_scheme: Optional[str] = Field(
        None, description="e.g. COGNITO_USER_POOL, CUSTOM_AUTHORIZER, AWS_IAM, JWT"
    )
    user_principal: Optional[str] = Field(None, description="Authenticated principal")
    claims: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_secure(self) -> bool:
        return self.auth_scheme is not None


class RequestReader(ABC):
    """Turns a Lambda event into a ContainerRequest."""

    @abstractmethod
    def read_request(
        self,
        event: Any,
        security_context: Optional[SecurityContext],
        lambda_context: Optional[LambdaContext],
        config: ContainerConfig,
    ) -> ContainerRequest:
        """Build the request representation for this invocation.

        Raises:
            InvalidRequestEventError: If the event cannot be translated
        """
        pass


class ResponseWriter(ABC):
    """Turns a completed ContainerResponse into the reply payload."""

    @abstractmethod
    def write_response(
        self,
        container_response: ContainerResponse,
        lambda_context: Optional[LambdaContext],
    ) -> AwsProxyResponse:
        """Build the reply payload.

        Raises:
            InvalidResponseObjectError: If the response cannot be written
        """
        pass


class SecurityContextWriter(ABC):
    """Derives a SecurityContext from the incoming event."""

    @abstractmethod
    def write_security_context(
        self, event: Any, lambda_context: Optional[LambdaContext]
    ) -> SecurityContext:
        pass


class ExceptionHandler(ABC):
    """Converts an unhandled failure into a well-formed reply."""

    @abstractmethod
    def handle(self, exc: BaseException) -> AwsProxyResponse:
        pass
