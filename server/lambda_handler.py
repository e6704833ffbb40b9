"""AWS Lambda entrypoints for the Struts Lambda container.

Point the function's handler setting at server.lambda_handler.handler (or
stream_handler for the stream-based runtime interface). The container
handler is created on the first invocation and reused while the execution
environment stays warm.
"""

import logging
from typing import IO, Any, Dict, Optional

from core import timer
from core.config_schema import ContainerConfig
from core.interfaces import LambdaContext
from core.logging_utils import configure_json_logging
from core.validators import ConfigurationError, load_config
from server.struts_handler import (
    StrutsLambdaContainerHandler,
    get_aws_proxy_handler,
    get_http_api_v2_proxy_handler,
)

# Configure JSON logging before the first invocation; a broken configuration
# is reported again (and fatally) by get_handler().
try:
    _log_config = load_config().logging
    log_level, log_pretty = _log_config.level, _log_config.pretty
except (ConfigurationError, FileNotFoundError):
    log_level, log_pretty = "INFO", False

configure_json_logging(level=log_level, pretty=log_pretty)
logger = logging.getLogger(__name__)

# Module-level state for Lambda warm starts
_config: Optional[ContainerConfig] = None
_handler: Optional[StrutsLambdaContainerHandler] = None


def _load_config() -> ContainerConfig:
    global _config

    if _config is None:
        _config = load_config()

    return _config


def get_handler() -> StrutsLambdaContainerHandler:
    """Get or create the container handler for this execution environment.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    global _handler

    if _handler is None:
        config = _load_config()
        if config.enable_timers:
            timer.enable()

        if config.event_type == "http_api_v2":
            _handler = get_http_api_v2_proxy_handler(config=config)
        else:
            _handler = get_aws_proxy_handler(config=config)

        logger.info(
            "Created new StrutsLambdaContainerHandler instance",
            extra={"event_type": config.event_type},
        )

    return _handler


def handler(event: Dict[str, Any], context: Optional[LambdaContext]) -> Dict[str, Any]:
    """AWS Lambda handler function.

    Args:
        event: API Gateway, ALB or function URL event
        context: Lambda context object

    Returns:
        Reply payload with statusCode, headers and body
    """
    return get_handler().proxy(event, context).to_payload()


def stream_handler(
    input_stream: IO[bytes], output_stream: IO[bytes], context: Optional[LambdaContext]
) -> None:
    """Stream variant of handler: JSON event in, JSON reply out."""
    get_handler().proxy_stream(input_stream, output_stream, context)
