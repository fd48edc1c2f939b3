"""An I/O adapter connecting aiocgi to the process’s standard streams."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Mapping
from typing import BinaryIO, Self

from . import http
from .container import Container


class Connection(http.Connection):
    """An HTTP request received as a CGI invocation over binary streams."""

    __slots__ = {
        "_stdin": """The stream from which the request body is read.""",
        "_stdout": """The stream to which the response is written.""",
    }

    _stdin: BinaryIO
    _stdout: BinaryIO

    def __init__(
        self: Self,
        container: Container,
        environ: Mapping[str, str],
        stdin: BinaryIO,
        stdout: BinaryIO,
    ) -> None:
        """
        Construct a new Connection.

        :param container: The handler container.
        :param environ: The CGI environment of the request.
        :param stdin: The stream carrying the request body.
        :param stdout: The stream to which the CGI response is written.
        """
        super().__init__(container, environ)
        self._stdin = stdin
        self._stdout = stdout

    def read_body(self: Self) -> bytes:
        """
        Read the request body.

        CONTENT_LENGTH bytes are read if the server set it; otherwise everything up to
        EOF is read.
        """
        content_length = self._environ.get("CONTENT_LENGTH", "").strip()
        if not content_length:
            return self._stdin.read()
        try:
            length = int(content_length)
        except ValueError:
            msg = f"CONTENT_LENGTH {content_length!r} is not an integer"
            raise ValueError(msg) from None
        if length < 0:
            msg = f"CONTENT_LENGTH {length} is negative"
            raise ValueError(msg)
        if length == 0:
            return b""
        body = self._stdin.read(length)
        if len(body) < length:
            logging.getLogger(__name__).warning(
                "Request body truncated: expected %d bytes, got %d", length, len(body)
            )
        return body

    def write_chunk(self: Self, data: bytes) -> None:  # noqa: D102
        self._stdout.write(data)
        self._stdout.flush()


def run(
    container: Container,
    environ: Mapping[str, str] | None = None,
    stdin: BinaryIO | None = None,
    stdout: BinaryIO | None = None,
) -> None:
    """
    Handle the single request this process was invoked for.

    :param container: The handler container to use.
    :param environ: The CGI environment, or None to use the process environment.
    :param stdin: The request body stream, or None to use standard input.
    :param stdout: The response stream, or None to use standard output.
    :raises MissingMetadataError: if the environment lacks a required variable
    :raises ValueError: if the environment holds a malformed value
    """
    connection = Connection(
        container,
        os.environ if environ is None else environ,
        sys.stdin.buffer if stdin is None else stdin,
        sys.stdout.buffer if stdout is None else stdout,
    )
    asyncio.run(connection.run())
