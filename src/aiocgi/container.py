"""A handler container."""

from __future__ import annotations

import types
from typing import Self

from .types import Context, HandlerType

CONTEXT: Context = types.MappingProxyType({"version": "3.0", "spec_version": "2.4"})
"""
The context passed to every handler.

It is the same for every request in the process and only names the protocol versions
this bridge understands, reserved for future negotiation.
"""


class Container:
    """
    A handler container.

    There should be one instance of this for an entire process.
    """

    __slots__ = {
        "handler": """The handler callable.""",
        "context": """The process-wide context passed to the handler.""",
    }

    handler: HandlerType
    context: Context

    def __init__(self: Self, handler: HandlerType, context: Context = CONTEXT) -> None:
        """
        Construct a new container.

        :param handler: The handler callable.
        :param context: The context to pass to the handler on every request.
        """
        self.handler = handler
        self.context = context
