"""Dispatch filter that hands each request to the wrapped action framework.

The framework is a WSGI application. It is resolved once, when the filter is
initialized, from the container context (an application injected in code)
or from the 'application' import string in the configuration.
"""

import logging
from typing import Any, Callable, Optional

from werkzeug.test import run_wsgi_app
from werkzeug.utils import ImportStringError, import_string

from core.servlet import (
    ContainerRequest,
    ContainerResponse,
    Filter,
    FilterChain,
    FilterConfig,
)
from core.validators import ConfigurationError

logger = logging.getLogger(__name__)

# Context attribute holding a WSGI application injected in code
APPLICATION_ATTRIBUTE = "struts.application"

WSGIApplication = Callable[..., Any]


def load_application(import_name: str) -> WSGIApplication:
    """Import a WSGI application from a 'package.module:attribute' string.

    Raises:
        ConfigurationError: If the import fails or the target isn't callable
    """
    try:
        application = import_string(import_name)
    except ImportStringError as e:
        raise ConfigurationError(
            f"Could not import WSGI application '{import_name}': {e.exception}"
        ) from e

    if not callable(application):
        raise ConfigurationError(f"'{import_name}' is not a WSGI application")

    return application


class ActionDispatchFilter(Filter):
    """Runs the wrapped framework for every request the filter is mapped to.

    This is the terminal filter: the framework produces the whole response,
    so the rest of the chain is never invoked.
    """

    def __init__(self) -> None:
        self.application: Optional[WSGIApplication] = None

    def init(self, filter_config: FilterConfig) -> None:
        context = filter_config.container_context
        application = context.get_attribute(APPLICATION_ATTRIBUTE)

        if application is None:
            import_name = context.config.application if context.config else None
            if not import_name:
                raise ConfigurationError(
                    "No WSGI application configured. Set 'application' in the "
                    "container configuration or pass one to the handler factory."
                )
            application = load_application(import_name)

        self.application = application
        logger.info(
            "Action dispatch filter initialized",
            extra={
                "filter_name": filter_config.filter_name,
                "application": getattr(application, "__name__", type(application).__name__),
            },
        )

    def do_filter(
        self,
        request: ContainerRequest,
        response: ContainerResponse,
        chain: FilterChain,
    ) -> None:
        if self.application is None:
            raise RuntimeError("ActionDispatchFilter used before init()")

        app_iter, status, headers = run_wsgi_app(self.application, request.environ)
        try:
            for chunk in app_iter:
                response.write(chunk)
        finally:
            close = getattr(app_iter, "close", None)
            if close is not None:
                close()

        response.set_status(int(status.split(" ", 1)[0]))
        for name, value in headers:
            response.add_header(name, value)

        response.flush_buffer()
