"""The HTTP protocol."""

from __future__ import annotations

import abc
import enum
import http
import logging
from collections.abc import AsyncIterator, Iterator, Mapping
from typing import Any, Self

import sioscgi.response

from .container import Container
from .scope import make_scope
from .types import EventOrScope, SendStream

DISCONNECT: EventOrScope = {"type": "http.disconnect"}
"""The event returned by the receive stream once the response has been sent."""

PENDING: EventOrScope = {"type": "http.pending"}
"""The event returned by the receive stream while the response is still unsent."""


class ProtocolError(Exception):
    """Raised internally if the handler produces a malformed response event stream."""

    __slots__ = ()


class State(enum.Enum):
    """The states of one request/response exchange."""

    AWAITING_START = enum.auto()
    """No ``http.response.start`` event has been received yet."""

    STREAMING = enum.auto()
    """The response has started and body chunks are being buffered."""

    COMPLETED = enum.auto()
    """The response has been written to the transport."""

    FAILED = enum.auto()
    """The exchange was aborted with a generic server error."""


def _calc_status(status: int) -> str:
    """
    Generate the HTTP status string.

    :param status: The status code.
    :returns: The status line including the reason phrase.
    """
    try:
        phrase = http.HTTPStatus(status).phrase
    except ValueError:
        phrase = "Unknown Status"
    return f"{status} {phrase}"


def _as_str(value: Any) -> str:
    """
    Convert a header name or value to a string.

    :param value: The name or value, as a str or as ISO-8859-1-encoded bytes.
    :returns: The string.
    """
    if isinstance(value, bytes | bytearray):
        return bytes(value).decode("ISO-8859-1")
    if isinstance(value, str):
        return value
    msg = f"Header name or value {value!r} is neither str nor bytes"
    raise ProtocolError(msg)


def _as_bytes(value: Any) -> bytes:
    """
    Convert a body chunk to bytes.

    :param value: The chunk, as bytes or as a str to be UTF-8-encoded; None is empty.
    :returns: The bytes.
    """
    if value is None:
        return b""
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("UTF-8")
    msg = f"Body {value!r} is neither bytes nor str"
    raise ProtocolError(msg)


class ResponseState:
    """
    The response progress shared between a Connection and its ReceiveStream.

    The Connection is the only writer. The flags are set only after the corresponding
    transport writes have finished, so a ReceiveStream pull that observes them always
    happens after the response reached the transport.
    """

    __slots__ = {
        "sent": """Whether the complete response has been written.""",
        "disconnected": """Whether the transport broke while writing.""",
    }

    sent: bool
    disconnected: bool

    def __init__(self: Self) -> None:
        """Construct a new ResponseState for a response not yet sent."""
        self.sent = False
        self.disconnected = False

    @property
    def finished(self: Self) -> bool:
        """Whether nothing more will ever be written to the client."""
        return self.sent or self.disconnected


class ReceiveStream(Iterator[EventOrScope], AsyncIterator[EventOrScope]):
    """
    The stream of request events handed to the handler.

    The first event carries the entire request body with ``more_body`` false. Every
    later event is either ``http.pending``, meaning the response has not been sent yet
    and the handler should go on producing it, or ``http.disconnect``, meaning the
    exchange is over. The stream never ends by itself: a handler must stop pulling once
    it sees ``http.disconnect``, and must not pull in a loop while ``http.pending`` is
    returned, because the response only progresses when the handler yields.

    The stream can be consumed with either ``next`` or ``await anext``.
    """

    __slots__ = {
        "_connection": """The connection from which the body is read.""",
        "_state": """The response state of the exchange.""",
        "_body_delivered": """Whether the request body has been returned.""",
    }

    _connection: Connection
    _state: ResponseState
    _body_delivered: bool

    def __init__(self: Self, connection: Connection, state: ResponseState) -> None:
        """
        Construct a new ReceiveStream.

        :param connection: The connection from which the body is read.
        :param state: The response state written by the connection.
        """
        self._connection = connection
        self._state = state
        self._body_delivered = False

    def __iter__(self: Self) -> Self:
        """Return self."""
        return self

    def __aiter__(self: Self) -> Self:
        """Return self."""
        return self

    def __next__(self: Self) -> EventOrScope:
        """Return the next request event."""
        if not self._body_delivered:
            self._body_delivered = True
            body = self._connection.read_body()
            logging.getLogger(__name__).debug("Read request body of %d bytes", len(body))
            return {"type": "http.request", "body": body, "more_body": False}
        if self._state.finished:
            return DISCONNECT
        return PENDING

    async def __anext__(self: Self) -> EventOrScope:
        """Return the next request event."""
        return next(self)


class Connection(abc.ABC):
    """
    The handler for one request.

    An I/O adapter must create an instance of an I/O-adapter-specific subclass of this
    class for the request it has received and then await the object’s run method.
    """

    __slots__ = {
        "_container": """The container holding the handler and context.""",
        "_environ": """The CGI environment of the request.""",
        "_response_state": """The response progress shared with the receive stream.""",
        "_state": """The current state of the exchange.""",
        "_status": """The response status code from the start event.""",
        "_response_headers": """The validated status and headers to write.""",
        "_body": """The accumulated response body.""",
        "_writer": """The CGI response state machine.""",
    }

    _container: Container
    _environ: Mapping[str, str]
    _response_state: ResponseState
    _state: State
    _status: int | None
    _response_headers: sioscgi.response.Headers | None
    _body: bytearray
    _writer: sioscgi.response.SCGIWriter

    def __init__(self: Self, container: Container, environ: Mapping[str, str]) -> None:
        """
        Construct a new Connection.

        :param container: The container holding the handler and context.
        :param environ: The CGI environment of the request.
        """
        self._container = container
        self._environ = environ
        self._response_state = ResponseState()
        self._state = State.AWAITING_START
        self._status = None
        self._response_headers = None
        self._body = bytearray()
        self._writer = sioscgi.response.SCGIWriter()

    @property
    def state(self: Self) -> State:
        """The current state of the exchange."""
        return self._state

    @property
    def response_state(self: Self) -> ResponseState:
        """The response progress shared with the receive stream."""
        return self._response_state

    @abc.abstractmethod
    def read_body(self: Self) -> bytes:
        """
        Read the entire request body from the underlying transport.

        :return: The body, which is empty if the request has none.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def write_chunk(self: Self, data: bytes) -> None:
        """
        Write a chunk of bytes to the underlying transport, blocking until done.

        :param data: The bytes to write.
        """
        raise NotImplementedError

    async def run(self: Self) -> None:
        """
        Run the handler for the request.

        :raises MissingMetadataError: if the environment lacks a required variable, in
            which case nothing has been written
        :raises ValueError: if the environment holds a malformed value, in which case
            nothing has been written
        """
        scope = make_scope(self._environ)
        receive = ReceiveStream(self, self._response_state)

        logging.getLogger(__name__).debug("Starting handler with scope %s", scope)
        try:
            events = self._container.handler(scope, receive, self._container.context)
            if hasattr(events, "__aiter__"):
                await self._consume_async(events)
            else:
                self._consume_sync(events)
        except Exception:  # pylint: disable=broad-except
            logging.getLogger(__name__).exception(
                "Uncaught exception in handler callable",
            )
            if self._state in (State.AWAITING_START, State.STREAMING):
                self._fail()
            return

        if self._state is State.AWAITING_START:
            logging.getLogger(__name__).error(
                "Handler finished without sending http.response.start"
            )
            self._fail()
        elif self._state is State.STREAMING:
            logging.getLogger(__name__).warning(
                "Handler finished without a final http.response.body; flushing"
            )
            try:
                self._complete()
            except Exception:  # pylint: disable=broad-except
                logging.getLogger(__name__).exception("Flushing the response failed")
                self._fail()

    def _consume_sync(self: Self, events: SendStream) -> None:
        """
        Drain a synchronous send stream until the exchange completes or fails.

        :param events: The send stream.
        """
        iterator = iter(events)  # type: ignore[arg-type]
        try:
            for event in iterator:
                self._handle_event(event)
                if self._state in (State.COMPLETED, State.FAILED):
                    break
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    async def _consume_async(self: Self, events: SendStream) -> None:
        """
        Drain an asynchronous send stream until the exchange completes or fails.

        :param events: The send stream.
        """
        iterator = aiter(events)  # type: ignore[arg-type]
        try:
            async for event in iterator:
                self._handle_event(event)
                if self._state in (State.COMPLETED, State.FAILED):
                    break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def _handle_event(self: Self, event: EventOrScope) -> None:
        """
        Apply one response event to the state machine.

        :param event: The event.
        """
        logging.getLogger(__name__).debug("Handler sent %s", event)
        try:
            self._apply(event)
        except ProtocolError:
            logging.getLogger(__name__).exception("Malformed response event stream")
            self._fail()

    def _apply(self: Self, event: EventOrScope) -> None:
        """
        Apply one response event, raising on protocol violations.

        :param event: The event.
        :raises ProtocolError: if the event is out of order or malformed
        """
        event_type = event.get("type") if isinstance(event, Mapping) else None
        if event_type == "http.response.start":
            if self._state is not State.AWAITING_START:
                msg = "http.response.start sent more than once"
                raise ProtocolError(msg)
            status = event.get("status")
            if not isinstance(status, int) or isinstance(status, bool):
                msg = f"Status {status!r} is not an integer"
                raise ProtocolError(msg)
            headers = event.get("headers") or ()
            string_headers = [(_as_str(k), _as_str(v)) for k, v in headers]
            # The CGI server owns the framing of the response, so the handler’s idea of
            # a Transfer-Encoding is dropped.
            filtered_headers = [
                (k, v) for k, v in string_headers if k.lower() != "transfer-encoding"
            ]
            # sioscgi emits Content-Type and Location once each, so a second copy would
            # be lost silently.
            for name in ("content-type", "location"):
                if sum(k.lower() == name for k, _ in filtered_headers) > 1:
                    msg = f"Header {name} sent more than once"
                    raise ProtocolError(msg)
            try:
                self._response_headers = sioscgi.response.Headers(
                    _calc_status(status), filtered_headers
                )
            except sioscgi.response.Error as exc:
                msg = f"Response headers rejected: {exc}"
                raise ProtocolError(msg) from exc
            self._status = status
            self._state = State.STREAMING
        elif event_type == "http.response.body":
            if self._state is not State.STREAMING:
                msg = "http.response.body sent before http.response.start"
                raise ProtocolError(msg)
            self._body += _as_bytes(event.get("body"))
            if not event.get("more_body", False):
                self._complete()
        else:
            msg = f"Unknown event type {event_type!r} sent by handler"
            raise ProtocolError(msg)

    def _complete(self: Self) -> None:
        """Write the buffered status, headers, and body and enter COMPLETED."""
        assert self._response_headers is not None
        self._state = State.COMPLETED
        self._send_event(self._response_headers)
        if self._body:
            self._send_event(sioscgi.response.Body(bytes(self._body)))
        self._send_event(sioscgi.response.End())
        self._response_state.sent = True
        logging.getLogger(__name__).debug(
            "Sent response %d with %d body bytes", self._status, len(self._body)
        )

    def _fail(self: Self) -> None:
        """Discard anything buffered, write a generic server error, and enter FAILED."""
        self._state = State.FAILED
        self._status = None
        self._response_headers = None
        self._body = bytearray()
        self._send_event(
            sioscgi.response.Headers(
                _calc_status(int(http.HTTPStatus.INTERNAL_SERVER_ERROR)), []
            )
        )
        self._send_event(sioscgi.response.End())
        self._response_state.sent = True

    def _send_event(self: Self, event: sioscgi.response.Event) -> None:
        """Send an event to the CGI client."""
        raw = self._writer.send(event)
        if raw and not self._response_state.disconnected:
            try:
                self.write_chunk(raw)
            except (BrokenPipeError, ConnectionResetError):
                logging.getLogger(__name__).debug("CGI output broken on write")
                self._response_state.disconnected = True
