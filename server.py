from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import List, Optional

from client import call
from handlers import register_default_handlers
from protocol import DEFAULT_PORT, DEFAULT_TIMEOUT, POLL_INTERVAL, RPCError
from runtimes.threaded import DatagramServer

logger = logging.getLogger("lucid_rpc")


def build_server(host: str, port: int, poll_interval: float) -> DatagramServer:
    server = DatagramServer(host=host, port=port, poll_interval=poll_interval)
    register_default_handlers(server)
    return server


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Lucid datagram RPC. Runs a server when no function is given, "
        "otherwise calls FUNCTION on the server and prints the reply.",
    )
    parser.add_argument("function", nargs="?", help="function to call (client mode)")
    parser.add_argument("params", nargs="*", help="function arguments")
    parser.add_argument("--host", default=None, help="bind address (server) or server address (client)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="client reply timeout in seconds")
    parser.add_argument("--poll-interval", type=float, default=POLL_INTERVAL, help="server idle wake-up in seconds")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def run_client(args: argparse.Namespace) -> int:
    host = args.host or "127.0.0.1"
    print(f"Sending request: function '{args.function}' with {len(args.params)} arguments")
    try:
        reply = call(host, args.port, [args.function, *args.params], timeout=args.timeout)
    except RPCError as exc:
        print(f"Error: Failed to get response from server ({exc})", file=sys.stderr)
        return 1
    print(reply)
    return 0


def run_server(args: argparse.Namespace) -> int:
    server = build_server(args.host or "0.0.0.0", args.port, args.poll_interval)

    def handle_signal(signum, frame) -> None:
        logger.info("Received signal %d", signum)
        server.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        server.start()
    except RPCError as exc:
        logger.error("Cannot start server: %s", exc)
        return 1

    print(f"Lucid RPC server listening on port {server.address[1]}. Use Ctrl+C to stop.")
    while not server.wait(args.poll_interval):
        pass

    print("Shutting down server...")
    server.stop()
    print("RPC server stopped")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.function is not None:
        return run_client(args)
    return run_server(args)


if __name__ == "__main__":
    sys.exit(main())
