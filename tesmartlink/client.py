"""TESmart KVM client implementation."""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import transport
from .config import load_config
from .exceptions import (
    BadArgumentError,
    BadReplyError,
    CommunicationError,
    NoReplyError,
)
from .protocol import (
    FIELD_GATEWAY,
    FIELD_IP,
    FIELD_MASK,
    FIELD_PORT,
    MAX_INPUT,
    MIN_INPUT,
    get_active_command,
    is_dotted_quad,
    keep_digits,
    normalise_octets,
    query_packet,
    scan_active,
    set_buzzer_command,
    set_input_command,
    set_input_fallback_command,
    set_led_timeout_command,
    set_packet,
    strip_field,
)

LOGGER = logging.getLogger(__name__)

ASCII_DEADLINE = 2.0
RAW_DEADLINE = 1.2


@dataclass(frozen=True)
class Target:
    """Device endpoint plus the per-operation deadlines, in seconds."""

    ip: str
    port: int
    get_timeout: float
    set_timeout: float

    @property
    def address(self):
        return (self.ip, self.port)


@dataclass(frozen=True)
class NetworkConfig:
    """Network settings as reported by (or sent to) the KVM's ASCII protocol."""

    ip: str
    port: int
    mask: str
    gateway: str


def _validate_target(ip: str, port: int, get_timeout: float, set_timeout: float) -> Target:
    if not ip or not str(ip).strip():
        raise BadArgumentError("IP address cannot be empty")
    if isinstance(port, bool) or not isinstance(port, int) or not (1 <= port <= 65535):
        raise BadArgumentError(f"Invalid TCP port: {port!r}. Must be between 1 and 65535")
    if get_timeout <= 0 or set_timeout <= 0:
        raise BadArgumentError("Timeouts must be positive")
    return Target(str(ip).strip(), port, float(get_timeout), float(set_timeout))


class TESmartKVM:
    """Client for controlling a TESmart KVM switch over TCP/IP.

    Each operation opens its own TCP session. All sessions are serialised
    through one lock, held from connect to close, so the device never sees two
    connections at once no matter how many threads call in.

    Configuration is loaded from ~/.config/tesmartlink/config.toml if it exists.
    Explicit parameters override configuration file values.

    Args:
        host: IP address of the KVM (default: from config or 192.168.1.10)
        port: TCP port number (default: from config or 5000)
        get_timeout: Deadline for queries in seconds (default: from config or 0.6)
        set_timeout: Deadline for set commands in seconds (default: from config or 0.45)
        config_path: Path to config file (default: ~/.config/tesmartlink/config.toml)
        connection: Connection name in the config file
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        get_timeout: Optional[float] = None,
        set_timeout: Optional[float] = None,
        config_path: Optional[Path] = None,
        connection: Optional[str] = None,
    ):
        self._lock = threading.Lock()

        if None in (host, port, get_timeout, set_timeout):
            conn = load_config(config_path, connection).active_connection
            host = host if host is not None else conn.ip
            port = port if port is not None else conn.port
            get_timeout = get_timeout if get_timeout is not None else conn.get_timeout
            set_timeout = set_timeout if set_timeout is not None else conn.set_timeout

        self._target = _validate_target(host, port, get_timeout, set_timeout)

    @property
    def target(self) -> Target:
        with self._lock:
            return self._target

    def set_target(self, ip: str, port: int, get_timeout: float, set_timeout: float) -> None:
        """Replace the endpoint and timeouts. No I/O is done.

        Raises:
            BadArgumentError: If any value is out of range
        """
        target = _validate_target(ip, port, get_timeout, set_timeout)
        with self._lock:
            self._target = target
        LOGGER.info("target set to %s:%d", target.ip, target.port)

    def _exchange(self, payload: bytes, set_command: bool = False) -> bytes:
        """Run one binary session under the lock."""
        with self._lock:
            target = self._target
            deadline = target.set_timeout if set_command else target.get_timeout
            return transport.exchange(target.address, payload, deadline)

    def get_active_input(self) -> int:
        """Get the currently active input.

        An unparseable reply is retried once.

        Returns:
            Active input number (1-16)

        Raises:
            UnreachableError: If the KVM cannot be reached
            CommunicationError: If sending fails
            NoReplyError: If neither attempt produced an active-input frame
        """
        reply = self._exchange(get_active_command())
        port, ok = scan_active(reply)
        if ok:
            return port

        LOGGER.debug("no active-input frame in %s, retrying", reply.hex().upper() or "<empty>")
        try:
            second = self._exchange(get_active_command())
        except CommunicationError as e:
            raise NoReplyError(
                f"No active-input reply (last reply: {reply.hex().upper() or '<empty>'}): {e}"
            ) from e
        port, ok = scan_active(second)
        if ok:
            return port
        raise NoReplyError(f"No active-input reply in {second.hex().upper() or '<empty>'}")

    def set_input(self, port: int) -> None:
        """Select an input.

        The 1-indexed command is tried first; if it fails at the transport
        level the 0-indexed form is sent instead. The switch is not verified.

        Args:
            port: Input number to activate (1-16)

        Raises:
            BadArgumentError: If port is out of range
            CommunicationError: If both attempts fail
        """
        if isinstance(port, bool) or not isinstance(port, int) or not (MIN_INPUT <= port <= MAX_INPUT):
            raise BadArgumentError(
                f"Invalid input: {port!r}. Must be between {MIN_INPUT} and {MAX_INPUT}"
            )

        try:
            self._exchange(set_input_command(port), set_command=True)
            return
        except CommunicationError as e:
            LOGGER.info("set input %d failed (%s), trying alternate command", port, e)

        self._exchange(set_input_fallback_command(port), set_command=True)

    def set_buzzer(self, enabled: bool) -> None:
        """Enable or disable the buzzer.

        Raises:
            CommunicationError: If communication fails
        """
        self._exchange(set_buzzer_command(enabled), set_command=True)

    def set_led_timeout(self, timeout: int) -> None:
        """Set the LED display timeout.

        Args:
            timeout: Timeout in seconds (0 for always on, or 10, or 30)

        Raises:
            BadArgumentError: If timeout is not a valid value
            CommunicationError: If communication fails
        """
        try:
            command = set_led_timeout_command(timeout)
        except ValueError as e:
            raise BadArgumentError(str(e)) from e

        self._exchange(command, set_command=True)

    def ping(self) -> None:
        """Check that the KVM answers a status query end to end."""
        self.get_active_input()

    def raw_hex_send(self, hex_string: str, deadline: float = RAW_DEADLINE) -> str:
        """Send arbitrary bytes given as hex and return the reply as uppercase hex.

        Intended for diagnostics: the reply is collected for the full deadline
        (or until the device closes the connection).

        Raises:
            BadArgumentError: If the hex string is empty or invalid
        """
        cleaned = hex_string.replace(" ", "")
        if not cleaned:
            raise BadArgumentError("Empty hex string")
        try:
            payload = bytes.fromhex(cleaned)
        except ValueError as e:
            raise BadArgumentError(f"Invalid hex: {e}") from e

        with self._lock:
            reply = transport.exchange_raw(self._target.address, payload, deadline)
        return reply.hex().upper()

    def _query_field(self, field: str) -> str:
        with self._lock:
            reply = transport.exchange_until_term(
                self._target.address, query_packet(field), ASCII_DEADLINE
            )
        if not reply.strip():
            raise NoReplyError(f"No reply to {field}? query")
        value = strip_field(reply, field)
        if value is None:
            raise BadReplyError(f"Unexpected reply to {field}? query: {reply!r}")
        return value

    def get_network_config(self) -> NetworkConfig:
        """Read IP, TCP port, netmask and gateway over the ASCII protocol.

        Each field is a separate session. Zero padding in addresses is removed
        (``192.168.001.010`` -> ``192.168.1.10``).

        Raises:
            NoReplyError: If a query gets no reply
            BadReplyError: If a reply is malformed
        """
        ip_raw = self._query_field(FIELD_IP)
        port_raw = self._query_field(FIELD_PORT)
        mask_raw = self._query_field(FIELD_MASK)
        gw_raw = self._query_field(FIELD_GATEWAY)

        addresses = []
        for field, raw in ((FIELD_IP, ip_raw), (FIELD_MASK, mask_raw), (FIELD_GATEWAY, gw_raw)):
            value = normalise_octets(raw)
            if not is_dotted_quad(value):
                raise BadReplyError(f"Bad {field} reply: {raw!r}")
            addresses.append(value)

        digits = keep_digits(port_raw)
        if not digits:
            raise BadReplyError(f"Bad port reply: {port_raw!r}")
        port = int(digits)
        if not 1 <= port <= 65535:
            raise BadReplyError(f"Bad port: {port}")

        ip, mask, gateway = addresses
        return NetworkConfig(ip=ip, port=port, mask=mask, gateway=gateway)

    def set_network_config(self, ip: str, port: int, mask: str, gateway: str) -> None:
        """Send new network settings over the ASCII protocol.

        The four packets go out in order, one session each. An empty reply is
        accepted; a non-empty one must contain ``OK``. The KVM usually needs a
        power cycle before a new IP or port takes effect, and the client keeps
        talking to its current target until ``set_target`` is called.

        Raises:
            BadArgumentError: If a value is malformed
            BadReplyError: If the KVM answers something other than OK
        """
        for field, value in ((FIELD_IP, ip), (FIELD_MASK, mask), (FIELD_GATEWAY, gateway)):
            if not is_dotted_quad(value):
                raise BadArgumentError(f"Invalid {field} value: {value!r}")
        if isinstance(port, bool) or not isinstance(port, int) or not (1 <= port <= 65535):
            raise BadArgumentError(f"Invalid TCP port: {port!r}. Must be between 1 and 65535")

        sequence = (
            set_packet(FIELD_IP, ip),
            set_packet(FIELD_PORT, port),
            set_packet(FIELD_MASK, mask),
            set_packet(FIELD_GATEWAY, gateway),
        )
        for packet in sequence:
            with self._lock:
                raw = transport.send_once(self._target.address, packet, ASCII_DEADLINE)
            reply = raw.decode("ascii", errors="replace").replace("\x00", "").strip()
            if reply and "OK" not in reply:
                raise BadReplyError(f"Unexpected reply to {packet.decode('ascii')!r}: {reply!r}")

    def __repr__(self) -> str:
        """String representation of the KVM client."""
        target = self.target
        return f"TESmartKVM(host='{target.ip}', port={target.port})"
