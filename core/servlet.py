"""Servlet-style request/response containers and filter chain.

The wrapped framework is driven through filters registered on a
ContainerContext, the way a servlet container would drive it. Requests are
werkzeug requests over a WSGI environ; responses are mutable buffers that
release a CompletionLatch once they are committed.
"""

import io
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from werkzeug.datastructures import Headers
from werkzeug.http import HTTP_STATUS_CODES, parse_options_header
from werkzeug.wrappers import Request

if TYPE_CHECKING:
    from core.config_schema import ContainerConfig

logger = logging.getLogger(__name__)


class DispatcherType(str, Enum):
    """Ways a request can reach a filter."""

    REQUEST = "REQUEST"
    ASYNC = "ASYNC"
    INCLUDE = "INCLUDE"
    FORWARD = "FORWARD"
    ERROR = "ERROR"


class CompletionLatch:
    """Single-use signal that a response has been fully written."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def count_down(self) -> None:
        self._event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until released; False if the timeout expired first."""
        return self._event.wait(timeout)

    @property
    def is_released(self) -> bool:
        return self._event.is_set()


class ContainerRequest(Request):
    """Request representation for one invocation.

    Carries the security context and Lambda context next to the WSGI
    environ, plus a settable reference to the container context the request
    is executing in.
    """

    def __init__(
        self,
        environ: Dict[str, Any],
        security_context: Optional[Any] = None,
        lambda_context: Optional[Any] = None,
    ) -> None:
        super().__init__(environ)
        self.security_context = security_context
        self.lambda_context = lambda_context
        self.container_context: Optional["ContainerContext"] = None
        self.dispatcher_type = DispatcherType.REQUEST


class ContainerResponse:
    """Mutable response the filter chain writes into.

    The response is committed by flush_buffer(), which releases the latch
    the invocation loop waits on. Headers and status stay writable after the
    commit; the reply is only built once the latch is released.
    """

    def __init__(self, request: Optional[Request], latch: CompletionLatch) -> None:
        self.request = request
        self.latch = latch
        self.status_code = 200
        self.headers = Headers()
        self._body = io.BytesIO()
        self._committed = False

    @property
    def status(self) -> str:
        """Status line, e.g. '404 Not Found'."""
        reason = HTTP_STATUS_CODES.get(self.status_code, "Unknown")
        return f"{self.status_code} {reason}"

    def set_status(self, status_code: int) -> None:
        self.status_code = int(status_code)

    def get_header(self, name: str) -> Optional[str]:
        """First value of a header, or None if it is absent."""
        return self.headers.get(name)

    def get_headers(self, name: str) -> List[str]:
        return self.headers.getlist(name)

    def set_header(self, name: str, value: str) -> None:
        self.headers.set(name, value)

    def add_header(self, name: str, value: str) -> None:
        self.headers.add(name, value)

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("Content-Type")

    @property
    def charset(self) -> Optional[str]:
        """Charset parameter of the Content-Type header, if any."""
        if not self.content_type:
            return None
        _, options = parse_options_header(self.content_type)
        return options.get("charset")

    def write(self, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode(self.charset or "utf-8")
        self._body.write(data)

    def get_body(self) -> bytes:
        return self._body.getvalue()

    @property
    def is_committed(self) -> bool:
        return self._committed

    def flush_buffer(self) -> None:
        """Commit the response and release the completion latch once."""
        if self._committed:
            return
        self._committed = True
        self.latch.count_down()


class FilterConfig:
    """What a filter receives when it is initialized."""

    def __init__(
        self,
        filter_name: str,
        container_context: "ContainerContext",
        init_parameters: Optional[Dict[str, str]] = None,
    ) -> None:
        self.filter_name = filter_name
        self.container_context = container_context
        self.init_parameters = dict(init_parameters or {})


class Filter(ABC):
    """A request filter registered on a ContainerContext."""

    def init(self, filter_config: FilterConfig) -> None:
        """Called once, before the filter sees its first request."""
        pass

    @abstractmethod
    def do_filter(
        self,
        request: ContainerRequest,
        response: ContainerResponse,
        chain: "FilterChain",
    ) -> None:
        """Process the request; call chain.do_filter() to continue."""
        pass


def url_pattern_matches(pattern: str, path: str) -> bool:
    """Servlet URL pattern matching: '/*', '/prefix/*', '*.ext' or exact."""
    if pattern.endswith("/*"):
        prefix = pattern[:-2]
        return path == prefix or path.startswith(prefix + "/")
    if pattern.startswith("*."):
        return path.endswith(pattern[1:])
    return path == pattern


class FilterRegistration:
    """A named filter plus the URL patterns and dispatch types it serves."""

    def __init__(
        self, name: str, filter_: Filter, container_context: "ContainerContext"
    ) -> None:
        self.name = name
        self.filter = filter_
        self.url_patterns: List[str] = []
        self.dispatcher_types: set = set()
        self.init_parameters: Dict[str, str] = {}
        self._container_context = container_context
        self._initialized = False

    def set_init_parameter(self, name: str, value: str) -> None:
        self.init_parameters[name] = value

    def add_mapping_for_url_patterns(
        self,
        dispatcher_types: Optional[Iterable[DispatcherType]],
        is_match_after: bool,
        *url_patterns: str,
    ) -> None:
        """Map the filter to URL patterns.

        Args:
            dispatcher_types: Dispatch types to serve (None means REQUEST)
            is_match_after: False puts the mapping ahead of every mapping
                declared so far, True puts it behind them
            url_patterns: One or more servlet URL patterns
        """
        if not url_patterns:
            raise ValueError(f"Filter {self.name} needs at least one URL pattern")
        for pattern in url_patterns:
            if not (pattern.startswith("/") or pattern.startswith("*.")):
                raise ValueError(f"Invalid URL pattern for filter {self.name}: {pattern}")

        self.dispatcher_types.update(dispatcher_types or {DispatcherType.REQUEST})
        self.url_patterns.extend(url_patterns)
        self._container_context._add_mapping(self, is_match_after)

    def matches(self, path: str, dispatcher_type: DispatcherType) -> bool:
        if dispatcher_type not in self.dispatcher_types:
            return False
        return any(url_pattern_matches(p, path) for p in self.url_patterns)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def ensure_initialized(self) -> None:
        if self._initialized:
            return
        self.filter.init(
            FilterConfig(self.name, self._container_context, self.init_parameters)
        )
        self._initialized = True
        logger.info(f"Filter {self.name} initialized")


class FilterChain:
    """Ordered filters for one request, ending at an optional servlet."""

    def __init__(self, filters: List[Filter], servlet: Optional[Any] = None) -> None:
        self.filters = filters
        self.servlet = servlet
        self._position = 0

    def do_filter(self, request: ContainerRequest, response: ContainerResponse) -> None:
        if self._position < len(self.filters):
            current = self.filters[self._position]
            self._position += 1
            current.do_filter(request, response, self)
        elif self.servlet is not None:
            self.servlet.service(request, response)


class ContainerContext:
    """Container-wide state shared by every invocation in an environment.

    Holds attributes and the filter registry. Mutated during initialization
    only; read-only afterwards.
    """

    def __init__(self, config: Optional["ContainerConfig"] = None) -> None:
        self.config = config
        self._attributes: Dict[str, Any] = {}
        self._filters: Dict[str, FilterRegistration] = {}
        self._mappings: List[FilterRegistration] = []

    def get_attribute(self, name: str) -> Any:
        return self._attributes.get(name)

    def set_attribute(self, name: str, value: Any) -> None:
        self._attributes[name] = value

    def add_filter(self, name: str, filter_: Filter) -> FilterRegistration:
        """Register a filter under a unique name.

        Raises:
            ValueError: If a filter with this name is already registered
        """
        if name in self._filters:
            raise ValueError(f"Filter {name} is already registered")
        registration = FilterRegistration(name, filter_, self)
        self._filters[name] = registration
        logger.debug(f"Filter {name} registered")
        return registration

    def remove_filter(self, name: str) -> None:
        """Drop a filter and its mappings; unknown names are ignored."""
        registration = self._filters.pop(name, None)
        if registration is not None and registration in self._mappings:
            self._mappings.remove(registration)

    def get_filter_registration(self, name: str) -> Optional[FilterRegistration]:
        return self._filters.get(name)

    @property
    def filter_registrations(self) -> List[FilterRegistration]:
        """Mapped filters in the order they run."""
        return list(self._mappings)

    def _add_mapping(self, registration: FilterRegistration, is_match_after: bool) -> None:
        if registration in self._mappings:
            self._mappings.remove(registration)
        if is_match_after:
            self._mappings.append(registration)
        else:
            self._mappings.insert(0, registration)

    def get_filter_chain(
        self,
        request: ContainerRequest,
        servlet: Optional[Any] = None,
        dispatcher_type: Optional[DispatcherType] = None,
    ) -> FilterChain:
        """Build the chain of filters that apply to this request."""
        if dispatcher_type is None:
            dispatcher_type = getattr(request, "dispatcher_type", DispatcherType.REQUEST)

        filters = []
        for registration in self._mappings:
            if registration.matches(request.path, dispatcher_type):
                registration.ensure_initialized()
                filters.append(registration.filter)

        return FilterChain(filters, servlet)
