from __future__ import annotations

import logging
from typing import Optional, Sequence

from protocol import RESULT_BUFFER_SIZE, bound_result
from registry import FunctionRegistry

logger = logging.getLogger(__name__)

# Returned when a request carries no function name at all.
MISSING_NAME_RESULT = "-1"


def format_argv(args: Sequence[str]) -> str:
    return " ".join(f"argv[{index}]='{value}'" for index, value in enumerate(args))


def format_echo(args: Sequence[str], limit: int = RESULT_BUFFER_SIZE) -> str:
    text = f"argc={len(args)}"
    if args:
        text = f"{text} {format_argv(args)}"
    return bound_result(text, limit)


def dispatch(registry: FunctionRegistry, name: Optional[str], args: Sequence[str]) -> str:
    """
    Resolve name against the registry and run the handler.

    Unknown names fall back to an echo of the arguments so the caller still
    sees what the server received. Handler exceptions are turned into an
    error string; dispatch itself never raises.
    """
    if name is None:
        return MISSING_NAME_RESULT

    func = registry.lookup(name)
    if func is None:
        logger.debug("No function named %r, echoing %d args", name, len(args))
        return format_echo(args)

    try:
        result = func(list(args))
    except Exception as exc:
        logger.exception("Function %r failed", name)
        return bound_result(f"error: {exc}")

    if not isinstance(result, str):
        logger.warning("Function %r returned %s, expected str", name, type(result).__name__)
        result = "" if result is None else str(result)
    return bound_result(result)
