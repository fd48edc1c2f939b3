"""Data types used by multiple modules."""

from collections.abc import (
    AsyncIterable,
    AsyncIterator,
    Callable,
    Iterable,
    Iterator,
    Mapping,
)
from typing import Any

EventOrScopeValue = (
    bytes
    | str
    | int
    | float
    | tuple[Any, ...]
    | list[Any]
    | Mapping[str, Any]
    | bool
    | None
)
"""The legal types of values in event or scope dictionaries."""

EventOrScope = Mapping[str, EventOrScopeValue]
"""The type of an event or scope mapping."""

Context = Mapping[str, str]
"""The type of the process-wide context passed to the handler."""

SendStream = Iterable[EventOrScope] | AsyncIterable[EventOrScope]
"""The type of the sequence of response events produced by a handler."""

ReceiveStream = Iterator[EventOrScope] | AsyncIterator[EventOrScope]
"""The type of the sequence of request events handed to a handler."""

HandlerType = Callable[[EventOrScope, ReceiveStream, Context], SendStream]
"""
The type of a handler callable.

The handler is called with the scope, the receive stream, and the context, and returns
a synchronous or asynchronous iterable of response events (typically by being a
generator or asynchronous generator function).
"""
