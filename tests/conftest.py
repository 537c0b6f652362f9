from __future__ import annotations

import socket
import threading
import time
from typing import Callable, Optional

import pytest

from tesmartlink.client import TESmartKVM

Responder = Callable[[bytes], Optional[bytes]]


class StubKVM:
    """Loopback TCP server standing in for the switch.

    Every connection gets one read; ``respond`` maps the request to the reply
    bytes (``None`` closes without answering). ``max_concurrent`` is the
    largest number of requests the stub was handling at the same moment,
    counted from request arrival until the reply is about to be written.
    """

    def __init__(self, respond: Responder, hold: float = 0.0) -> None:
        self.respond = respond
        self.hold = hold
        self.received: list[bytes] = []
        self.connections = 0
        self.max_concurrent = 0
        self._in_flight = 0
        self._lock = threading.Lock()
        self._stopped = threading.Event()

        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(64)
        self._server.settimeout(0.1)
        self.port = self._server.getsockname()[1]
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def _accept_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn: socket.socket) -> None:
        with conn:
            conn.settimeout(2.0)
            try:
                data = conn.recv(4096)
            except OSError:
                return
            with self._lock:
                self.connections += 1
                self.received.append(data)
                self._in_flight += 1
                self.max_concurrent = max(self.max_concurrent, self._in_flight)
            try:
                if self.hold:
                    time.sleep(self.hold)
                reply = self.respond(data)
            finally:
                with self._lock:
                    self._in_flight -= 1
            if reply:
                try:
                    conn.sendall(reply)
                except OSError:
                    return

    def close(self) -> None:
        self._stopped.set()
        self._server.close()
        self._thread.join(1.0)


@pytest.fixture
def stub_kvm():
    stubs: list[StubKVM] = []

    def factory(respond: Responder, hold: float = 0.0) -> StubKVM:
        stub = StubKVM(respond, hold)
        stubs.append(stub)
        return stub

    yield factory
    for stub in stubs:
        stub.close()


def client_for(stub: StubKVM, get_timeout: float = 0.6, set_timeout: float = 0.45) -> TESmartKVM:
    return TESmartKVM(host="127.0.0.1", port=stub.port, get_timeout=get_timeout, set_timeout=set_timeout)


@pytest.fixture
def closed_port() -> int:
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def make_client():
    return client_for
