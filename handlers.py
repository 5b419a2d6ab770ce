from __future__ import annotations

import re
from typing import Sequence

from dispatcher import format_argv, format_echo
from protocol import bound_result
from registry import RPCHandler

# Returned by add() when it is not given exactly two operands.
MISSING_ARGUMENT_RESULT = "-2"
STOP_RESULT = "0"

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def parse_leading_int(text: str) -> int:
    """Parse an integer prefix the way strtol does; no digits means 0."""
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def add(args: Sequence[str]) -> str:
    if len(args) != 2:
        return MISSING_ARGUMENT_RESULT
    return str(parse_leading_int(args[0]) + parse_leading_int(args[1]))


def hello(args: Sequence[str]) -> str:
    if not args:
        return "world"
    return bound_result(f"world (argc={len(args)} {format_argv(args)})")


def echo(args: Sequence[str]) -> str:
    return format_echo(args)


def make_stop_handler(server) -> RPCHandler:
    def stop(args: Sequence[str]) -> str:
        server.request_stop()
        return STOP_RESULT

    return stop


def register_default_handlers(server) -> None:
    server.register("add", add)
    server.register("hello", hello)
    server.register("echo", echo)
    server.register("stop", make_stop_handler(server))
