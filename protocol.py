"""
Wire protocol for lucid datagram RPC.

Request payload (one UDP datagram):
    name \\0 arg1 \\0 arg2 \\0 ...

Every token is followed by a single null byte. Runs of null bytes are
skipped on decode, so they never produce empty arguments.

Response payload: the raw result text, no framing.
"""

from __future__ import annotations

import itertools
import logging
from typing import Iterable, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

MAX_FUNCTIONS = 10
MAX_ARGS = 10
MAX_NAME_LENGTH = 49
DEFAULT_PORT = 8888
MAX_PACKET_SIZE = 4096
# The server receives at most MAX_PACKET_SIZE - 1 bytes per datagram.
MAX_REQUEST_SIZE = MAX_PACKET_SIZE - 1
RESULT_BUFFER_SIZE = 2048
DEFAULT_TIMEOUT = 5.0
POLL_INTERVAL = 1.0

DELIMITER = b"\x00"
_DELIMITER_BYTE = DELIMITER[0]
_TEXT_ENCODING = "utf-8"
_TEXT_ERRORS = "surrogateescape"

OVERFLOW_RESULT = "error: buffer overflow"

BytesLike = Union[bytes, bytearray, memoryview]


class RPCError(Exception):
    code = "INTERNAL"

    def __init__(self, message: str = "") -> None:
        super().__init__(f"{self.code}: {message}" if message else self.code)
        self.message = message


class InvalidParamError(RPCError, ValueError):
    code = "INVALID_PARAM"


class ServerStateError(InvalidParamError):
    code = "INVALID_STATE"


class RPCOverflowError(RPCError):
    code = "OVERFLOW"


class RegistryFullError(RPCError):
    code = "FULL"


class NetworkError(RPCError, OSError):
    code = "NETWORK"


class RPCTimeoutError(NetworkError, TimeoutError):
    code = "TIMEOUT"


def to_wire_text(text: str) -> bytes:
    return text.encode(_TEXT_ENCODING, _TEXT_ERRORS)


def from_wire_text(raw: BytesLike) -> str:
    return bytes(raw).decode(_TEXT_ENCODING, _TEXT_ERRORS)


def encode_args(
    args: Iterable[str],
    max_size: int = MAX_REQUEST_SIZE,
    max_args: int = MAX_ARGS,
) -> bytes:
    """
    Join the argument list into a null-delimited request payload.

    Raises RPCOverflowError instead of returning a partial encoding when the
    payload would not fit in max_size bytes or the receiver could not hold
    that many arguments.
    """
    if args is None:
        raise InvalidParamError("args must not be None")

    chunks = []
    size = 0
    count = 0
    for token in args:
        if token is None:
            raise InvalidParamError(f"argument {count} is None")
        if not isinstance(token, str):
            raise InvalidParamError(f"argument {count} must be str, not {type(token).__name__}")
        raw = to_wire_text(token)
        if DELIMITER in raw:
            raise InvalidParamError(f"argument {count} contains a null byte")

        count += 1
        if count > max_args - 1:
            raise RPCOverflowError(f"too many arguments (limit {max_args - 1})")

        size += len(raw) + 1
        if size > max_size:
            raise RPCOverflowError(f"request exceeds {max_size} bytes")
        chunks.append(raw)
        chunks.append(DELIMITER)

    return b"".join(chunks)


class ArgumentReader:
    """
    Lazily walk a request buffer, yielding each token as a memoryview.

    The views alias the buffer, so the buffer must stay alive (and unmodified)
    while the tokens are in use.
    """

    def __init__(self, buffer: BytesLike) -> None:
        self._view = memoryview(buffer).cast("B")
        self.offset = 0

    def __iter__(self) -> Iterator[memoryview]:
        return self

    def __next__(self) -> memoryview:
        view = self._view
        end = len(view)
        pos = self.offset

        while pos < end and view[pos] == _DELIMITER_BYTE:
            pos += 1
        if pos >= end:
            self.offset = end
            raise StopIteration

        start = pos
        while pos < end and view[pos] != _DELIMITER_BYTE:
            pos += 1
        self.offset = pos
        return view[start:pos]

    def has_remaining(self) -> bool:
        view = self._view
        return any(byte != _DELIMITER_BYTE for byte in view[self.offset:])


def decode_args(buffer: Optional[BytesLike], max_args: int = MAX_ARGS) -> List[str]:
    """
    Split a request payload back into its argument list.

    At most max_args - 1 tokens are recovered (the last slot is reserved as
    the list terminator). Any token data beyond that raises RPCOverflowError.
    """
    if buffer is None:
        raise InvalidParamError("buffer must not be None")
    if len(buffer) == 0:
        raise InvalidParamError("buffer is empty")
    if max_args < 1:
        raise InvalidParamError("max_args must be at least 1")

    reader = ArgumentReader(buffer)
    args = [from_wire_text(token) for token in itertools.islice(reader, max_args - 1)]
    if reader.has_remaining():
        raise RPCOverflowError(f"request holds more than {max_args - 1} arguments")
    return args


def bound_result(text: str, limit: int = RESULT_BUFFER_SIZE) -> str:
    # The last byte of RESULT_BUFFER_SIZE is reserved, so results hold limit - 1 bytes.
    if len(to_wire_text(text)) > limit - 1:
        logger.warning("Result of %d chars exceeds %d bytes", len(text), limit - 1)
        return OVERFLOW_RESULT
    return text
