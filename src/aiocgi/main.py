"""The application entry point."""

import argparse
import importlib
import importlib.metadata
import json
import logging
import logging.config
import pathlib
import sys
from typing import Any

from .container import Container
from .scope import MissingMetadataError


def load_handler(spec: str) -> Any:
    """
    Import a handler callable.

    :param spec: The dotted.module.name:callable of the handler, where the callable part
        may itself be dotted to reach an attribute of an attribute.
    :return: The callable.
    :raises ValueError: if the spec is not a module name, a colon, and a callable name
    """
    parts = spec.split(":")
    if len(parts) != 2 or not all(parts):
        msg = "Handler callable must be module name, colon, and callable name."
        raise ValueError(msg)
    handler: Any = importlib.import_module(parts[0])
    for part in parts[1].split("."):
        handler = getattr(handler, part)
    return handler


def main() -> None:
    """Run the handler for the request this process was invoked for."""
    try:
        # Discover the available I/O adapters.
        io_adapters = {
            entry.name: entry
            for entry in importlib.metadata.entry_points(group="aiocgi.io")
        }

        # Parse and check command-line parameters.
        parser = argparse.ArgumentParser(
            description="Run an event-streaming handler as a CGI program."
        )
        parser.add_argument(
            "--adapter",
            default="stdio",
            choices=io_adapters,
            help="the I/O adapter to use (default: stdio)",
        )
        parser.add_argument(
            "--logging",
            "-l",
            type=pathlib.Path,
            help="the JSON file containing a logging configuration dictionary per "
            "logging.config.dictConfig (default: warnings and errors to stderr)",
        )
        parser.add_argument(
            "handler", help="the dotted.module.name:callable of the handler"
        )
        args = parser.parse_args()

        # Set up logging. Standard output carries the response, so the default
        # configuration logs to standard error, which CGI servers keep in their error
        # log.
        if args.logging is not None:
            with args.logging.open("rb") as logging_config_file:
                cfg = json.load(logging_config_file)
            logging.config.dictConfig(cfg)
        else:
            logging.basicConfig(level=logging.WARNING)

        # Load the I/O adapter.
        adapter = io_adapters[args.adapter].load()

        # Import the handler module and find the callable.
        sys.path.insert(0, ".")
        try:
            handler = load_handler(args.handler)
        except ValueError as exc:
            parser.error(str(exc))

        # Handle the request.
        try:
            adapter.run(Container(handler))
        except (MissingMetadataError, ValueError):
            logging.getLogger(__name__).exception("Invalid CGI request environment")
            sys.exit(1)
    finally:
        logging.shutdown()
