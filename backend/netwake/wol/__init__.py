# Wake-on-LAN protocol module
from .magic_packet import (
    MAGIC_PACKET_SIZE,
    build_magic_packet,
    extract_target_mac,
    format_mac,
    normalize_mac,
    parse_mac_address,
    validate_magic_packet,
)

__all__ = [
    "MAGIC_PACKET_SIZE", "build_magic_packet", "extract_target_mac", "format_mac",
    "normalize_mac", "parse_mac_address", "validate_magic_packet",
]
