import io
import re
from typing import Any, Callable, Optional, Union


class InvalidEventError(ValueError):
    """Raised when an event cannot be serialised to the SSE wire format."""


class ServerSentEvent:
    """
    Immutable value object holding one Server-Sent Events message.

    Fields are written in the order ``id``, ``event``, ``retry``, comment,
    ``data``, followed by a blank line. Multi-line ``data`` and ``comment``
    values are split into one line per fragment.
    """

    _LINE_SEP_EXPR = re.compile(r"\r\n|\r|\n")
    DEFAULT_SEPARATOR = "\n"
    VALID_SEPARATORS = ("\r\n", "\r", "\n")

    TAG_COMMENT = ": "
    TAG_ID = "id: "
    TAG_EVENT = "event: "
    TAG_DATA = "data: "
    TAG_RETRY = "retry: "

    __slots__ = ("data", "event", "id", "retry", "comment")

    def __init__(
        self,
        data: Optional[Any] = None,
        *,
        event: Optional[str] = None,
        id: Optional[str] = None,
        retry: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> None:
        object.__setattr__(self, "data", str(data) if data is not None else None)
        object.__setattr__(self, "event", event)
        object.__setattr__(self, "id", str(id) if id is not None else None)
        object.__setattr__(self, "retry", retry)
        object.__setattr__(self, "comment", comment)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{name}={getattr(self, name)!r}"
            for name in self.__slots__
            if getattr(self, name) is not None
        )
        return f"{type(self).__name__}({fields})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ServerSentEvent):
            return NotImplemented
        return all(getattr(self, n) == getattr(other, n) for n in self.__slots__)

    def __hash__(self) -> int:
        return hash(tuple(getattr(self, n) for n in self.__slots__))

    def replace(self, **changes: Any) -> "ServerSentEvent":
        """Return a copy with the given fields replaced."""
        fields = {name: getattr(self, name) for name in self.__slots__}
        fields.update(changes)
        return ServerSentEvent(**fields)

    def validate(self) -> None:
        if not self.data and not self.id and not self.comment:
            raise InvalidEventError("event needs data, an id or a comment")
        for name in ("event", "comment"):
            if not isinstance(getattr(self, name), (str, type(None))):
                raise InvalidEventError(f"{name} argument must be str")
        if self.retry is not None:
            # bool is an int subclass but never a meaningful delay
            if not isinstance(self.retry, int) or isinstance(self.retry, bool):
                raise InvalidEventError("retry argument must be int")
            if self.retry < 0:
                raise InvalidEventError("retry argument must not be negative")

    def _encode_impl(self, write_fn: Callable[[str], Any], sep: str) -> None:
        if self.id:
            # Clean newlines in the event id
            write_fn(f"{self.TAG_ID}{self._LINE_SEP_EXPR.sub('', self.id)}{sep}")

        if self.event:
            # Clean newlines in the event name
            write_fn(f"{self.TAG_EVENT}{self._LINE_SEP_EXPR.sub('', self.event)}{sep}")

        if self.retry is not None:
            write_fn(f"{self.TAG_RETRY}{self.retry}{sep}")

        if self.comment:
            for chunk in self._LINE_SEP_EXPR.split(self.comment):
                write_fn(f"{self.TAG_COMMENT}{chunk}{sep}")

        if self.data:
            # Break multi-line data into multiple data: lines
            for chunk in self._LINE_SEP_EXPR.split(self.data):
                write_fn(f"{self.TAG_DATA}{chunk}{sep}")

        write_fn(sep)

    def encode(self, sep: Optional[str] = None) -> bytes:
        """Encode to SSE format and return UTF-8 bytes."""
        sep = self.DEFAULT_SEPARATOR if sep is None else sep
        if sep not in self.VALID_SEPARATORS:
            raise ValueError(f"sep must be one of: \\r\\n, \\r, \\n, got: {sep!r}")
        self.validate()
        buffer = io.StringIO()
        self._encode_impl(buffer.write, sep)
        return buffer.getvalue().encode("utf-8")


def encode(event: ServerSentEvent, sep: Optional[str] = None) -> bytes:
    return event.encode(sep)


def ensure_event(value: Union[ServerSentEvent, dict, Any]) -> ServerSentEvent:
    """Coerce whatever a producer returned into a ``ServerSentEvent``."""
    if isinstance(value, ServerSentEvent):
        return value
    if isinstance(value, dict):
        try:
            return ServerSentEvent(**value)
        except TypeError as e:
            raise InvalidEventError(f"unsupported event fields: {e}") from e
    if value is None:
        raise InvalidEventError("producer returned no event")
    return ServerSentEvent(value)
