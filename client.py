from __future__ import annotations

import logging
import socket
from typing import Sequence

from protocol import (
    DEFAULT_PORT,
    DEFAULT_TIMEOUT,
    MAX_PACKET_SIZE,
    InvalidParamError,
    NetworkError,
    RPCOverflowError,
    RPCTimeoutError,
    encode_args,
    from_wire_text,
)

logger = logging.getLogger(__name__)


def call(
    host: str,
    port: int,
    args: Sequence[str],
    response_size: int = MAX_PACKET_SIZE,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """
    Send one request datagram and wait for one reply.

    args[0] is the function name. A fresh socket is used for every call and
    is always closed before returning.

    Raises:
        InvalidParamError: no function name, or response_size is not positive.
        RPCOverflowError: the request does not fit in a packet, or the reply
            does not fit in response_size - 1 bytes.
        RPCTimeoutError: no reply arrived within timeout seconds.
        NetworkError: any other socket failure.
    """
    if not args:
        raise InvalidParamError("At least the function name is required")
    if response_size <= 0:
        raise InvalidParamError("response_size must be positive")
    if not 0 < port < 65536:
        raise InvalidParamError(f"Invalid port {port}")

    request = encode_args(args)
    # response_size counts a reserved final byte, so replies hold response_size - 1 bytes.
    capacity = response_size - 1

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.settimeout(timeout)
            sock.sendto(request, (host, port))
            # Read one byte past capacity so an oversized reply is detectable.
            data, _ = sock.recvfrom(capacity + 1)
    except socket.timeout as exc:
        raise RPCTimeoutError(f"No reply from {host}:{port} within {timeout}s") from exc
    except OSError as exc:
        raise NetworkError(f"Call to {host}:{port} failed: {exc}") from exc

    if len(data) > capacity:
        raise RPCOverflowError(f"Reply does not fit in {response_size} bytes")

    logger.debug("Reply of %d bytes from %s:%d", len(data), host, port)
    return from_wire_text(data)


class RPCClient:
    """
    Blocking datagram RPC client.

    Holds the server address only; every call opens and closes its own socket.

    Usage:
        client = RPCClient("127.0.0.1", 8888)
        result = client.call("add", "2", "3")
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        response_size: int = MAX_PACKET_SIZE,
    ) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout
        self._response_size = response_size

    def call(self, method: str, *params: str) -> str:
        return call(
            self._host,
            self._port,
            [method, *params],
            response_size=self._response_size,
            timeout=self._timeout,
        )
