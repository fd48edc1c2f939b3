"""Translation of a CGI environment into an HTTP scope."""

from __future__ import annotations

import base64
import logging
import re
import types
import wsgiref.util
from collections.abc import Mapping

from .types import EventOrScope

_PROMOTED_HEADERS = ("CONTENT_TYPE", "CONTENT_LENGTH", "CONTENT_MD5")
"""Body-related environment variables reported outside the HTTP_ namespace."""

_FORWARDED_AUTHORIZATION = ("HTTP_AUTHORIZATION", "REDIRECT_HTTP_AUTHORIZATION")
"""Environment variables that may carry a raw, rewritten Authorization header."""

_SERVER_PROTOCOL_RE = re.compile(r"HTTP/(\d+(?:\.\d+)?)", re.IGNORECASE)


class MissingMetadataError(KeyError):
    """Raised if a required CGI environment variable is absent."""

    __slots__ = ()


def _require(environ: Mapping[str, str], key: str) -> str:
    """
    Look up a required environment variable.

    :param environ: The CGI environment dictionary.
    :param key: The variable name.
    :returns: The value.
    :raises MissingMetadataError: if the variable is not present
    """
    try:
        return environ[key]
    except KeyError:
        raise MissingMetadataError(key) from None


def _calc_http_version(server_protocol: str) -> str:
    """
    Convert a SERVER_PROTOCOL environment value into an HTTP protocol version string.

    :param server_protocol: The value of the CGI ``SERVER_PROTOCOL`` variable.
    :returns: The HTTP version in use.
    """
    server_protocol = server_protocol.strip()
    match = _SERVER_PROTOCOL_RE.fullmatch(server_protocol)
    if match is not None:
        return match.group(1)
    if server_protocol.upper() == "INCLUDED":
        return "1.0"
    msg = f"Unrecognized HTTP protocol version {server_protocol!r}"
    raise ValueError(msg)


def _guess_scheme(environ: Mapping[str, str]) -> str:
    """
    Guess the URL scheme (http or https).

    :param environ: The CGI environment dictionary.
    :returns: The guessed scheme.
    """
    https = environ.get("HTTPS")
    if https is None:
        return "http"
    return wsgiref.util.guess_scheme({"HTTPS": https})


def _calc_http_headers(environ: Mapping[str, str]) -> tuple[tuple[str, str], ...]:
    """
    Extract the HTTP headers from the environment dictionary.

    Generic headers keep the enumeration order of the environment, and repeated names
    stay separate entries. If the generic set does not carry an Authorization header,
    one is synthesized from whichever credential variables the front-end server set.

    :param environ: The CGI environment dictionary.
    :returns: The HTTP headers as a tuple of (name, value) pairs.
    """
    headers = [
        (k.removeprefix("HTTP_").replace("_", "-").lower(), v)
        for k, v in environ.items()
        if k.startswith("HTTP_") or k in _PROMOTED_HEADERS
    ]
    if not any(name == "authorization" for name, _ in headers):
        authorization = _calc_authorization(environ)
        if authorization is not None:
            headers.append(("authorization", authorization))
    return tuple(headers)


def _calc_authorization(environ: Mapping[str, str]) -> str | None:
    """
    Reconstruct an Authorization header withheld from the HTTP_ variables.

    Some servers consume the header themselves and only pass the decoded credentials,
    while others can be told to forward it under another name with a rewrite rule, for
    example under Apache:

        RewriteCond %{HTTP:Authorization} .+
        RewriteRule ^ - [E=HTTP_AUTHORIZATION:%0]

    :param environ: The CGI environment dictionary.
    :returns: The header value, or ``None`` if no credentials are available.
    """
    user = environ.get("PHP_AUTH_USER")
    if user is not None:
        password = environ.get("PHP_AUTH_PW", "")
        token = base64.b64encode(f"{user}:{password}".encode()).decode("ascii")
        return f"Basic {token}"
    digest = environ.get("PHP_AUTH_DIGEST")
    if digest is not None:
        return digest
    for key in _FORWARDED_AUTHORIZATION:
        value = environ.get(key)
        if value is not None:
            return value
    return None


def _calc_port(environ: Mapping[str, str], key: str) -> int | None:
    """
    Parse a port number variable.

    :param environ: The CGI environment dictionary.
    :param key: The variable name.
    :returns: The port number, or ``None`` if the variable is absent or empty.
    """
    port = environ.get(key)
    if not port:
        return None
    try:
        return int(port)
    except ValueError:
        msg = f"{key} {port!r} is not an integer"
        raise ValueError(msg) from None


def _calc_client(environ: Mapping[str, str]) -> tuple[str, int | None] | None:
    """
    Generate the ``client`` key for the scope.

    :param environ: The CGI environment dictionary.
    :returns: A two-element tuple of client address and port number (or ``None`` if the
        port is not known), or ``None`` if the address is not available.
    """
    addr = environ.get("REMOTE_ADDR")
    if addr is None:
        return None
    return (addr, _calc_port(environ, "REMOTE_PORT"))


def _calc_server(environ: Mapping[str, str]) -> tuple[str, int | None] | None:
    """
    Generate the ``server`` key for the scope.

    :param environ: The CGI environment dictionary.
    :returns: A two-element tuple of server address and port number (or ``None`` if the
        port is not known), or ``None`` if the address is not available.
    """
    addr = environ.get("SERVER_ADDR", environ.get("SERVER_NAME"))
    if addr is None:
        return None
    return (addr, _calc_port(environ, "SERVER_PORT"))


def _calc_raw_path(environ: Mapping[str, str], path: str) -> str:
    """
    Generate the ``raw_path`` key for the scope.

    :param environ: The CGI environment dictionary.
    :param path: The already computed path, used if nothing better is available.
    :returns: The path of the script as seen before any internal redirection.
    """
    orig_path_info = environ.get("ORIG_PATH_INFO")
    if orig_path_info:
        return orig_path_info
    script_path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
    return script_path or path


def make_scope(environ: Mapping[str, str]) -> EventOrScope:
    """
    Convert a CGI environment mapping into a read-only HTTP scope.

    Nothing is read besides the mapping itself.

    :param environ: The CGI environment mapping.
    :return: The HTTP scope.
    :raises MissingMetadataError: if a required variable is absent
    :raises ValueError: if the protocol version or a port number is malformed, or the
        request method is empty
    """
    # Uppercase keys in the environment (the CGI specification states that they are
    # case-insensitive, and this makes subsequent code easier).
    environ = {k.upper(): v for k, v in environ.items()}

    # The query string is authoritative on its own; the part of REQUEST_URI after the
    # question mark is discarded even if a rewrite made the two disagree.
    path = _require(environ, "REQUEST_URI").split("?", 1)[0]
    if not path:
        path = "/"

    method = _require(environ, "REQUEST_METHOD").strip().upper()
    if not method:
        msg = "REQUEST_METHOD is empty"
        raise ValueError(msg)

    scope = {
        "type": "http",
        "http_version": _calc_http_version(_require(environ, "SERVER_PROTOCOL")),
        "method": method,
        "scheme": _guess_scheme(environ),
        "path": path,
        "raw_path": _calc_raw_path(environ, path),
        "query_string": _require(environ, "QUERY_STRING"),
        "root_path": environ.get("DOCUMENT_ROOT", ""),
        "headers": _calc_http_headers(environ),
        "client": _calc_client(environ),
        "server": _calc_server(environ),
        "extensions": types.MappingProxyType(
            {"environ": types.MappingProxyType(environ)}
        ),
    }
    logging.getLogger(__name__).debug("Built scope %s", scope)
    return types.MappingProxyType(scope)
