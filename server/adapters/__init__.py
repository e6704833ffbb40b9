"""Cloud event adapters for the Lambda container.

Each adapter module provides the collaborators the invocation loop is
composed with:
- request readers (cloud event -> ContainerRequest)
- response writers (ContainerResponse -> cloud reply)
- security context writers and exception handlers
"""

from .aws_lambda import (
    AwsHttpApiV2RequestReader,
    AwsHttpApiV2SecurityContextWriter,
    AwsProxyExceptionHandler,
    AwsProxyRequestReader,
    AwsProxyResponseWriter,
    AwsProxySecurityContextWriter,
)

__all__ = [
    "AwsHttpApiV2RequestReader",
    "AwsHttpApiV2SecurityContextWriter",
    "AwsProxyExceptionHandler",
    "AwsProxyRequestReader",
    "AwsProxyResponseWriter",
    "AwsProxySecurityContextWriter",
]
