from __future__ import annotations

import enum
import logging
import select
import socket
import threading
from typing import Optional, Sequence, Tuple

from dispatcher import dispatch
from protocol import (
    DEFAULT_PORT,
    MAX_PACKET_SIZE,
    POLL_INTERVAL,
    NetworkError,
    RPCError,
    ServerStateError,
    decode_args,
    to_wire_text,
)
from registry import FunctionRegistry, RPCHandler

logger = logging.getLogger(__name__)


class ServerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class DatagramServer:
    """
    UDP RPC server with a single background dispatch thread.

    The thread wakes up every poll_interval seconds to check the stop event,
    so shutdown is cooperative: a request being handled when stop is
    requested still gets its reply.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        registry: Optional[FunctionRegistry] = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._host = host
        self._port = port
        self._registry = registry if registry is not None else FunctionRegistry()
        self._poll_interval = poll_interval
        self._socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._state = ServerState.IDLE
        # Reentrant: signal handlers call request_stop() on the thread that may hold it.
        self._state_lock = threading.RLock()

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is ServerState.RUNNING and not self._stop_event.is_set()

    @property
    def address(self) -> Tuple[str, int]:
        if self._socket is None:
            return (self._host, self._port)
        return self._socket.getsockname()[:2]

    def register(self, name: str, func: RPCHandler) -> None:
        self._registry.register(name, func)

    def start(self) -> None:
        with self._state_lock:
            if self._state is not ServerState.IDLE:
                raise ServerStateError(f"Cannot start a server that is {self._state.value}")

            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind((self._host, self._port))
            except OSError as exc:
                sock.close()
                raise NetworkError(f"Cannot bind {self._host}:{self._port}: {exc}") from exc

            self._socket = sock
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._serve_loop,
                args=(sock,),
                daemon=True,
                name="rpc-server",
            )
            try:
                self._thread.start()
            except RuntimeError:
                self._thread = None
                self._socket = None
                sock.close()
                raise
            self._state = ServerState.RUNNING

        host, port = self.address
        logger.info("Lucid RPC server listening on %s:%d (udp)", host, port)

    def request_stop(self) -> None:
        self._stop_event.set()
        with self._state_lock:
            if self._state is ServerState.RUNNING:
                self._state = ServerState.SHUTTING_DOWN

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown has been requested; False on timeout."""
        return self._stop_event.wait(timeout)

    def stop(self) -> None:
        with self._state_lock:
            if self._state not in (ServerState.RUNNING, ServerState.SHUTTING_DOWN) or self._socket is None:
                raise ServerStateError(f"Cannot stop a server that is {self._state.value}")
            self._state = ServerState.SHUTTING_DOWN
            self._stop_event.set()
            thread, self._thread = self._thread, None
            sock, self._socket = self._socket, None

        # The loop takes the state lock on exit, so join outside of it.
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        sock.close()

        with self._state_lock:
            self._state = ServerState.STOPPED

        logger.info("Lucid RPC server stopped")

    def _serve_loop(self, sock: socket.socket) -> None:
        while not self._stop_event.is_set():
            try:
                readable, _, _ = select.select([sock], [], [], self._poll_interval)
            except (OSError, ValueError) as exc:
                logger.error("Waiting for requests failed: %s", exc)
                break

            if not readable:
                continue

            try:
                data, addr = sock.recvfrom(MAX_PACKET_SIZE - 1)
            except OSError as exc:
                logger.warning("Receiving request failed: %s", exc)
                continue

            self._handle_datagram(sock, data, addr)

        self.request_stop()
        logger.debug("Server loop exited")

    def _handle_datagram(self, sock: socket.socket, data: bytes, addr: tuple) -> None:
        logger.debug("Received %d bytes from %s", len(data), addr)
        try:
            args = decode_args(data)
        except RPCError as exc:
            logger.warning("Dropping request from %s: %s", addr, exc)
            return

        if not args:
            logger.warning("Dropping request from %s: no function name", addr)
            return

        logger.debug("Calling %r with %d args", args[0], len(args) - 1)
        result = self._dispatch(args[0], args[1:])
        self._send_result(sock, result, addr)

    def _dispatch(self, name: str, args: Sequence[str]) -> str:
        return dispatch(self._registry, name, args)

    def _send_result(self, sock: socket.socket, result: str, addr: tuple) -> None:
        try:
            sock.sendto(to_wire_text(result), addr)
        except OSError as exc:
            logger.error("Sending result to %s failed: %s", addr, exc)

    def __enter__(self) -> "DatagramServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._state in (ServerState.RUNNING, ServerState.SHUTTING_DOWN):
            self.stop()
