"""Wire formats spoken by the TESmart KVM.

Two protocols share the same TCP port:

- a fixed 6-byte binary frame ``AA BB 03 <cmd> <arg> EE`` used for input
  selection, buzzer, LED timeout and the active-input query;
- short ASCII packets (``IP?``, ``IP:<v>;`` ...) used for network settings.

Everything here is pure and operates on byte buffers or strings.
"""

from typing import List, Optional, Tuple


# Frame layout
HEADER = bytes([0xAA, 0xBB, 0x03])
TERMINATOR = 0xEE
FRAME_LENGTH = 6

# Command tokens
CMD_SET_INPUT = 0x01
CMD_SET_BUZZER = 0x02
CMD_SET_LED_TIMEOUT = 0x03
CMD_GET_ACTIVE = 0x10
CMD_ACTIVE = 0x11

MIN_INPUT = 1
MAX_INPUT = 16

LED_TIMEOUTS = {
    0: 0x00,
    10: 0x0A,
    30: 0x1E,
}

# ASCII network configuration fields, in the order the device expects them
ASCII_TERMINATOR = ";"
FIELD_IP = "IP"
FIELD_PORT = "PT"
FIELD_MASK = "MA"
FIELD_GATEWAY = "GW"
NETWORK_FIELDS = (FIELD_IP, FIELD_PORT, FIELD_MASK, FIELD_GATEWAY)


def encode_command(token: int, value: int) -> bytes:
    """Encode a binary command frame.

    Args:
        token: Command token (e.g., CMD_SET_INPUT)
        value: Argument byte

    Returns:
        Encoded command bytes in format: AABB03<token><value>EE
    """
    return HEADER + bytes([token, value, TERMINATOR])


def get_active_command() -> bytes:
    """Create the query for the currently active input."""
    return encode_command(CMD_GET_ACTIVE, 0x00)


def set_input_command(port: int) -> bytes:
    """Create the primary (1-indexed) input selection command."""
    return encode_command(CMD_SET_INPUT, port)


def set_input_fallback_command(port: int) -> bytes:
    """Create the alternate (0-indexed) input selection command."""
    return encode_command(CMD_ACTIVE, port - 1)


def set_buzzer_command(enabled: bool) -> bytes:
    """Create a command to enable/disable the buzzer."""
    return encode_command(CMD_SET_BUZZER, 0x01 if enabled else 0x00)


def set_led_timeout_command(timeout: int) -> bytes:
    """Create a command to set the LED display timeout.

    Args:
        timeout: Timeout in seconds (0 for always on, 10, or 30)

    Returns:
        Encoded command bytes

    Raises:
        ValueError: If timeout is not a valid value
    """
    if timeout not in LED_TIMEOUTS:
        raise ValueError(f"Invalid timeout: {timeout}. Must be 0, 10, or 30")

    return encode_command(CMD_SET_LED_TIMEOUT, LED_TIMEOUTS[timeout])


def find_frames(buf: bytes) -> List[bytes]:
    """Locate complete binary frames inside a possibly noisy buffer.

    A match needs the three header bytes and the trailer at offset 5; the
    command and argument bytes are not inspected. After a match the scan
    resumes 5 bytes further on, so a frame that starts inside the trailing
    bytes of a previous one can still be found.
    """
    frames = []
    i = 0
    while i + 5 < len(buf):
        if buf[i:i + 3] == HEADER and buf[i + 5] == TERMINATOR:
            frames.append(bytes(buf[i:i + FRAME_LENGTH]))
            i += 4
        i += 1
    return frames


def has_frame(buf: bytes) -> bool:
    """Return True if at least one complete frame is present."""
    return bool(find_frames(buf))


def scan_active(buf: bytes) -> Tuple[int, bool]:
    """Extract the active input from a status reply.

    Complete ``AA BB 03 11 <k> EE`` frames win. Some firmware drops the
    trailing 0xEE, so a relaxed ``AA BB 03 11 <k>`` match is accepted when no
    full frame is present.

    Returns:
        ``(k + 1, True)`` on success, ``(0, False)`` otherwise
    """
    for frame in find_frames(buf):
        if frame[3] == CMD_ACTIVE:
            return frame[4] + 1, True

    marker = HEADER + bytes([CMD_ACTIVE])
    i = 0
    while i + 4 < len(buf):
        if buf[i:i + 4] == marker:
            return buf[i + 4] + 1, True
        i += 1
    return 0, False


def keep_digits_dots(text: str) -> str:
    """Keep only ASCII digits and dots."""
    return "".join(ch for ch in text if ch in "0123456789.")


def keep_digits(text: str) -> str:
    """Keep only ASCII digits."""
    return "".join(ch for ch in text if ch in "0123456789")


def normalise_octets(text: str) -> str:
    """Strip zero padding from a dotted address.

    ``"192.168.001.010"`` becomes ``"192.168.1.10"``. Segments that are not
    numbers (e.g. empty ones) are kept as they are, which keeps the function
    idempotent for any input.
    """
    parts = keep_digits_dots(text).split(".")
    return ".".join(str(int(part)) if part.isdigit() else part for part in parts)


def is_dotted_quad(text: str) -> bool:
    """Return True for four dot-separated ASCII decimal octets in 0..255."""
    parts = text.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        # str.isdigit also accepts superscripts and non-Latin digits
        if not part or len(part) > 3 or keep_digits(part) != part or int(part) > 255:
            return False
    return True


def query_packet(field: str) -> bytes:
    """Build an ASCII query such as ``IP?``."""
    return f"{field}?".encode("ascii")


def set_packet(field: str, value) -> bytes:
    """Build an ASCII set packet such as ``PT:5000;``."""
    return f"{field}:{value}{ASCII_TERMINATOR}".encode("ascii")


def clean_ascii_reply(raw: bytes, term: str = ASCII_TERMINATOR) -> str:
    """Drop NUL/CR/LF padding and cut the reply after the first terminator."""
    text = raw.decode("ascii", errors="replace")
    for junk in ("\x00", "\r", "\n"):
        text = text.replace(junk, "")
    cut = text.find(term)
    if cut >= 0:
        text = text[:cut + 1]
    return text


def strip_field(reply: str, field: str) -> Optional[str]:
    """Return the value of a ``<field>:<value>;`` reply, or None without the prefix."""
    reply = reply.strip()
    prefix = f"{field}:"
    if not reply.startswith(prefix):
        return None
    value = reply[len(prefix):]
    if value.endswith(ASCII_TERMINATOR):
        value = value[:-1]
    return value
