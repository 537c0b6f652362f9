from __future__ import annotations

import time

import pytest

from tesmartlink import transport
from tesmartlink.exceptions import UnreachableError


def test_exchange_returns_as_soon_as_a_frame_arrives(stub_kvm) -> None:
    stub = stub_kvm(lambda data: bytes.fromhex("AABB031103EE"))
    start = time.monotonic()
    reply = transport.exchange(("127.0.0.1", stub.port), bytes.fromhex("AABB031000EE"), 2.0)
    assert reply == bytes.fromhex("AABB031103EE")
    assert time.monotonic() - start < 1.0
    assert stub.received == [bytes.fromhex("AABB031000EE")]


def test_exchange_returns_partial_bytes_without_error(stub_kvm) -> None:
    stub = stub_kvm(lambda data: bytes.fromhex("AABB0311"))
    reply = transport.exchange(("127.0.0.1", stub.port), bytes.fromhex("AABB031000EE"), 0.5)
    assert reply == bytes.fromhex("AABB0311")


def test_exchange_silent_peer_returns_empty(stub_kvm) -> None:
    stub = stub_kvm(lambda data: None)
    assert transport.exchange(("127.0.0.1", stub.port), b"\x00", 0.3) == b""


def test_exchange_unreachable(closed_port) -> None:
    with pytest.raises(UnreachableError):
        transport.exchange(("127.0.0.1", closed_port), b"\x00", 0.3)


def test_exchange_deadline_applies_to_connect_and_read_separately(stub_kvm, monkeypatch) -> None:
    stub = stub_kvm(lambda data: None, hold=1.0)
    timeouts = []
    real_connect = transport.socket.create_connection

    def slow_connect(address, timeout=None):
        timeouts.append(timeout)
        time.sleep(0.2)
        return real_connect(address, timeout=timeout)

    monkeypatch.setattr(transport.socket, "create_connection", slow_connect)
    start = time.monotonic()
    assert transport.exchange(("127.0.0.1", stub.port), b"\x00", 0.3) == b""
    elapsed = time.monotonic() - start
    assert timeouts == [0.3]
    # The read loop gets the full deadline after a slow connect
    assert 0.45 <= elapsed < 2 * 0.3 + 0.5


def test_exchange_until_term_strips_padding(stub_kvm) -> None:
    stub = stub_kvm(lambda data: b"\x00\x00IP:192.168.001.010;\r\n\x00")
    reply = transport.exchange_until_term(("127.0.0.1", stub.port), b"IP?", 1.0)
    assert reply == "IP:192.168.001.010;"


def test_send_once_collects_reply(stub_kvm) -> None:
    stub = stub_kvm(lambda data: b"OK\r\n")
    assert transport.send_once(("127.0.0.1", stub.port), b"IP:10.0.0.2;", 1.0) == b"OK\r\n"
    assert stub.received == [b"IP:10.0.0.2;"]
