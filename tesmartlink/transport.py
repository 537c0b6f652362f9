"""Short-lived TCP sessions against the KVM.

Every exchange opens a fresh connection, writes the payload once, reads
whatever arrives before a deadline and closes. The connect gets its own
timeout of the same length, so the worst case is twice the deadline. Reads
are polled with a short per-read timeout so that "no data yet" never turns
into an error: the accumulated bytes are returned when the deadline passes,
and callers decide whether a partial or empty reply is useful.

None of these functions lock; the client serialises calls to them.
"""

import logging
import socket
import time
from typing import Callable, Optional, Tuple

from .exceptions import CommunicationError, UnreachableError
from .protocol import ASCII_TERMINATOR, clean_ascii_reply, has_frame

LOGGER = logging.getLogger(__name__)

Address = Tuple[str, int]

BINARY_READ_QUANTUM = 0.1
BINARY_RETRY_SLEEP = 0.015
BINARY_MAX_BYTES = 4096

ASCII_READ_QUANTUM = 0.2
ASCII_RETRY_SLEEP = 0.02
ASCII_MAX_BYTES = 2048


def _open(address: Address, timeout: float) -> socket.socket:
    try:
        sock = socket.create_connection(address, timeout=timeout)
    except OSError as e:
        raise UnreachableError(f"Cannot connect to {address[0]}:{address[1]}: {e}") from e
    LOGGER.debug("connected to %s:%d", *address)
    return sock


def _write(sock: socket.socket, payload: bytes) -> None:
    try:
        sock.sendall(payload)
    except OSError as e:
        raise CommunicationError(f"Send failed: {e}") from e


def _read_loop(
    sock: socket.socket,
    deadline: float,
    quantum: float,
    retry_sleep: float,
    max_bytes: int,
    done: Optional[Callable[[bytes], bool]] = None,
) -> bytes:
    """Accumulate bytes until ``done`` says so, the deadline passes or the cap is hit.

    A peer that closes the connection ends the loop early since nothing more
    can arrive.
    """
    buf = bytearray()
    end = time.monotonic() + deadline
    while True:
        remaining = end - time.monotonic()
        if remaining <= 0:
            break
        sock.settimeout(min(quantum, remaining))
        try:
            chunk = sock.recv(256)
        except OSError:
            # socket.timeout included
            time.sleep(retry_sleep)
            continue
        if not chunk:
            break
        buf.extend(chunk)
        if done is not None and done(bytes(buf)):
            break
        if len(buf) > max_bytes:
            break
    return bytes(buf)


def exchange(address: Address, payload: bytes, deadline: float) -> bytes:
    """Send a binary frame and read until a complete frame shows up.

    Args:
        address: (ip, port) of the KVM
        payload: Bytes to write
        deadline: Budget in seconds, applied separately to the connect and to
            the read loop, so a slow connect followed by a silent device can
            take up to twice this long

    Returns:
        The accumulated reply bytes, possibly empty

    Raises:
        UnreachableError: If the connection cannot be opened
        CommunicationError: If writing fails
    """
    with _open(address, deadline) as sock:
        _write(sock, payload)
        reply = _read_loop(
            sock, deadline, BINARY_READ_QUANTUM, BINARY_RETRY_SLEEP, BINARY_MAX_BYTES,
            done=has_frame,
        )
    LOGGER.debug("tx %s rx %s", payload.hex().upper(), reply.hex().upper())
    return reply


def exchange_raw(address: Address, payload: bytes, deadline: float) -> bytes:
    """Like :func:`exchange` but without early frame detection."""
    with _open(address, deadline) as sock:
        _write(sock, payload)
        reply = _read_loop(
            sock, deadline, BINARY_READ_QUANTUM, BINARY_RETRY_SLEEP, BINARY_MAX_BYTES,
        )
    LOGGER.debug("raw tx %s rx %s", payload.hex().upper(), reply.hex().upper())
    return reply


def exchange_until_term(
    address: Address,
    payload: bytes,
    deadline: float,
    term: str = ASCII_TERMINATOR,
) -> str:
    """Send an ASCII query and read until the terminator character arrives.

    Returns:
        The reply with NUL/CR/LF removed, cut after the first terminator
    """
    marker = term.encode("ascii")
    with _open(address, deadline) as sock:
        _write(sock, payload)
        raw = _read_loop(
            sock, deadline, ASCII_READ_QUANTUM, ASCII_RETRY_SLEEP, ASCII_MAX_BYTES,
            done=lambda buf: marker in buf,
        )
    reply = clean_ascii_reply(raw, term)
    LOGGER.debug("ascii tx %r rx %r", payload, reply)
    return reply


def send_once(address: Address, payload: bytes, deadline: float) -> bytes:
    """Send an ASCII packet and collect whatever comes back within the deadline.

    The first read error (including the deadline expiring) ends the read.
    """
    buf = bytearray()
    with _open(address, deadline) as sock:
        _write(sock, payload)
        end = time.monotonic() + deadline
        while len(buf) <= ASCII_MAX_BYTES:
            remaining = end - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                chunk = sock.recv(256)
            except OSError:
                break
            if not chunk:
                break
            buf.extend(chunk)
    LOGGER.debug("ascii tx %r rx %r", payload, bytes(buf))
    return bytes(buf)
