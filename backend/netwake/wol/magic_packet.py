"""
Wake-on-LAN magic packet codec.

A magic packet is 102 bytes: six 0xFF bytes followed by the target MAC
repeated 16 times. The functions here are pure; sockets live in
``sender`` and ``listener``.
"""

import re
from typing import Optional, Union

from ..core.errors import FormatError

SYNC_STREAM = b"\xff" * 6
MAC_LENGTH = 6
REPETITIONS = 16
MAGIC_PACKET_SIZE = len(SYNC_STREAM) + MAC_LENGTH * REPETITIONS  # 102

_SEPARATORS = re.compile(r"[:\- ]")
_HEX12 = re.compile(r"[0-9A-Fa-f]{12}")


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """
    Canonical internal form of a MAC address: 12 uppercase hex digits.

    Accepts ``AA:BB:CC:DD:EE:FF``, ``AA-BB-CC-DD-EE-FF`` and
    ``AABBCCDDEEFF`` in any case. Returns None for anything else.
    """
    if not mac:
        return None
    cleaned = _SEPARATORS.sub("", mac)
    if not _HEX12.fullmatch(cleaned):
        return None
    return cleaned.upper()


def format_mac(mac: Union[bytes, str], separator: str = ":") -> str:
    """Format raw bytes or any accepted MAC text as uppercase separated hex."""
    if isinstance(mac, (bytes, bytearray)):
        digits = bytes(mac).hex().upper()
    else:
        digits = normalize_mac(mac)
        if digits is None:
            raise FormatError(f"Invalid MAC address: {mac!r}")
    return separator.join(digits[i:i + 2] for i in range(0, len(digits), 2))


def parse_mac_address(text: str) -> bytes:
    """
    Parse MAC text into its 6 raw bytes.

    Raises:
        FormatError: if fewer or more than 12 hex digits remain after
            stripping ``:``, ``-`` and spaces.
    """
    digits = normalize_mac(text)
    if digits is None:
        raise FormatError(f"Invalid MAC address: {text!r}")
    return bytes.fromhex(digits)


def build_magic_packet(mac: bytes) -> bytes:
    """Build the 102-byte magic packet for a 6-byte MAC."""
    if len(mac) != MAC_LENGTH:
        raise FormatError(f"MAC must be {MAC_LENGTH} bytes, got {len(mac)}")
    return SYNC_STREAM + bytes(mac) * REPETITIONS


def validate_magic_packet(packet: bytes) -> bool:
    """
    Byte-exact structural check of a candidate magic packet.

    Never raises; any deviation (length, sync stream, a drifting
    repetition block) returns False.
    """
    if packet is None or len(packet) != MAGIC_PACKET_SIZE:
        return False
    if packet[:6] != SYNC_STREAM:
        return False
    target = packet[6:12]
    for offset in range(6, MAGIC_PACKET_SIZE, MAC_LENGTH):
        if packet[offset:offset + MAC_LENGTH] != target:
            return False
    return True


def extract_target_mac(packet: bytes) -> Optional[str]:
    """
    Return bytes 6..12 as ``AA:BB:CC:DD:EE:FF``.

    This does not require the packet to validate, so malformed but
    recognisable captures can still be attributed. Buffers shorter than
    12 bytes yield None.
    """
    if packet is None or len(packet) < 12:
        return None
    return format_mac(packet[6:12])
