import select
import socket
import threading
import time
import unittest
from unittest import mock

from client import RPCClient, call
from handlers import register_default_handlers
from protocol import NetworkError, RPCTimeoutError, ServerStateError
from runtimes.threaded import DatagramServer, ServerState

POLL_INTERVAL = 0.05


class DatagramServerTests(unittest.TestCase):
    def setUp(self):
        self.server = DatagramServer(host="127.0.0.1", port=0, poll_interval=POLL_INTERVAL)
        register_default_handlers(self.server)
        self.server.start()
        self.host, self.port = self.server.address

    def tearDown(self):
        if self.server.state in (ServerState.RUNNING, ServerState.SHUTTING_DOWN):
            self.server.stop()

    def _call(self, *args):
        return call(self.host, self.port, list(args), timeout=2.0)

    def _send_raw(self, payload, timeout=2.0):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.settimeout(timeout)
            sock.sendto(payload, (self.host, self.port))
            data, _ = sock.recvfrom(4096)
        return data

    def test_add_round_trip(self):
        self.assertEqual("5", self._call("add", "2", "3"))
        self.assertEqual("-2", self._call("add"))

    def test_echo_round_trip(self):
        self.assertEqual("argc=2 argv[0]='x' argv[1]='y'", self._call("echo", "x", "y"))

    def test_unknown_function_is_echoed(self):
        self.assertEqual("argc=1 argv[0]='q'", self._call("mystery", "q"))

    def test_client_object(self):
        client = RPCClient(self.host, self.port, timeout=2.0)
        self.assertEqual("world (argc=1 argv[0]='you')", client.call("hello", "you"))

    def test_late_registration(self):
        self.server.register("late", lambda args: "registered late")
        self.assertEqual("registered late", self._call("late"))

    def test_bad_packets_do_not_stop_the_server(self):
        too_many = b"\x00".join([b"echo"] + [b"x"] * 12)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            for payload in (too_many, b"\x00\x00", b""):
                sock.sendto(payload, (self.host, self.port))
            sock.settimeout(0.3)
            with self.assertRaises(socket.timeout):
                sock.recvfrom(4096)

        self.assertTrue(self.server.running)
        self.assertEqual("5", self._call("add", "4", "1"))

    def test_raw_request_with_extra_delimiters(self):
        self.assertEqual(b"7", self._send_raw(b"add\x00\x00\x003\x004\x00\x00"))

    def test_requests_are_served_in_order(self):
        results = []
        lock = threading.Lock()

        def worker(index):
            reply = self._call("add", str(index), "0")
            with lock:
                results.append(reply)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(str(i) for i in range(8)), sorted(results))

    def test_stop_function_shuts_server_down(self):
        thread = self.server._thread
        self.assertEqual("0", self._call("stop"))

        self.assertTrue(self.server.wait(timeout=1.0))
        self.assertFalse(self.server.running)
        thread.join(timeout=POLL_INTERVAL * 10)
        self.assertFalse(thread.is_alive())

        self.server.stop()
        self.assertEqual(ServerState.STOPPED, self.server.state)
        with self.assertRaises(ServerStateError):
            self.server.stop()

    def test_send_failure_is_logged_and_absorbed(self):
        real_sendto = socket.socket.sendto

        def sendto_failing_on_server(sock, *args):
            if threading.current_thread().name == "rpc-server":
                raise OSError("network is unreachable")
            return real_sendto(sock, *args)

        with mock.patch.object(socket.socket, "sendto", sendto_failing_on_server):
            with self.assertLogs("runtimes.threaded", level="ERROR") as logs:
                with self.assertRaises(RPCTimeoutError):
                    call(self.host, self.port, ["add", "2", "3"], timeout=0.3)

        self.assertIn("Sending result", logs.output[0])
        self.assertTrue(self.server.running)
        self.assertEqual("5", self._call("add", "2", "3"))

    def test_select_failure_ends_the_loop(self):
        thread = self.server._thread
        with mock.patch.object(select, "select", side_effect=OSError("bad file descriptor")):
            with self.assertLogs("runtimes.threaded", level="ERROR"):
                self.assertTrue(self.server.wait(1.0))
                thread.join(timeout=1.0)

        self.assertFalse(thread.is_alive())
        self.assertEqual(ServerState.SHUTTING_DOWN, self.server.state)
        self.server.stop()
        self.assertEqual(ServerState.STOPPED, self.server.state)

    def test_request_stop_while_state_lock_is_held(self):
        def stop_under_lock():
            with self.server._state_lock:
                self.server.request_stop()

        thread = threading.Thread(target=stop_under_lock, daemon=True)
        thread.start()
        thread.join(timeout=1.0)

        self.assertFalse(thread.is_alive())
        self.assertTrue(self.server.wait(0))
        self.assertEqual(ServerState.SHUTTING_DOWN, self.server.state)

    def test_stop_is_rejected_twice(self):
        self.server.stop()
        with self.assertRaises(ServerStateError):
            self.server.stop()

    def test_in_flight_request_completes_during_shutdown(self):
        entered = threading.Event()

        def slow(args):
            entered.set()
            time.sleep(0.2)
            return "done"

        self.server.register("slow", slow)
        replies = []
        caller = threading.Thread(target=lambda: replies.append(self._call("slow")))
        caller.start()
        self.assertTrue(entered.wait(timeout=2.0))

        self.server.stop()
        caller.join(timeout=2.0)
        self.assertEqual(["done"], replies)


class DatagramServerLifecycleTests(unittest.TestCase):
    def test_stop_before_start_is_rejected(self):
        server = DatagramServer(host="127.0.0.1", port=0)
        self.assertEqual(ServerState.IDLE, server.state)
        with self.assertRaises(ServerStateError):
            server.stop()

    def test_start_twice_is_rejected(self):
        with DatagramServer(host="127.0.0.1", port=0, poll_interval=POLL_INTERVAL) as server:
            with self.assertRaises(ServerStateError):
                server.start()
        self.assertEqual(ServerState.STOPPED, server.state)

    def test_thread_start_failure_releases_the_socket(self):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as reserved:
            reserved.bind(("127.0.0.1", 0))
            port = reserved.getsockname()[1]

        server = DatagramServer(host="127.0.0.1", port=port)
        with mock.patch.object(threading.Thread, "start", side_effect=RuntimeError("can't start new thread")):
            with self.assertRaises(RuntimeError):
                server.start()

        self.assertEqual(ServerState.IDLE, server.state)
        self.assertIsNone(server._socket)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as rebind:
            rebind.bind(("127.0.0.1", port))

    def test_bind_failure_raises_network_error(self):
        with DatagramServer(host="127.0.0.1", port=0, poll_interval=POLL_INTERVAL) as first:
            _, port = first.address
            second = DatagramServer(host="127.0.0.1", port=port)
            with self.assertRaises(NetworkError):
                second.start()
            self.assertEqual(ServerState.IDLE, second.state)


if __name__ == "__main__":
    unittest.main()
