"""
Best-effort device type classification.

Resolution order, first match wins:
- MAC prefix tables (6 hex digits, then 8)
- Hostname tokens
- Open TCP port fingerprint
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Set

from ..db.records import DeviceType
from ..wol.magic_packet import normalize_mac

logger = logging.getLogger(__name__)

# Vendor OUI -> device type (first 6 hex digits, no separators)
MAC_PREFIX_TYPES = {
    # Routers / network equipment
    "00E04C": DeviceType.ROUTER,  # Realtek
    "001E58": DeviceType.ROUTER,  # WNC
    "00259C": DeviceType.ROUTER,  # Belkin
    "001DD8": DeviceType.ROUTER,  # Tenda
    "C83A35": DeviceType.ROUTER,  # Tenda
    "E8DE27": DeviceType.ROUTER,  # TP-Link
    "F4F26D": DeviceType.ROUTER,  # TP-Link
    "A0F3C1": DeviceType.ROUTER,  # TP-Link
    "583BD9": DeviceType.ROUTER,
    "00E0FC": DeviceType.SWITCH,
    "F09FC2": DeviceType.ACCESS_POINT,  # Ubiquiti
    "00156D": DeviceType.ACCESS_POINT,  # Ubiquiti
    # Virtual machines
    "000C29": DeviceType.COMPUTER,  # VMware
    "005056": DeviceType.COMPUTER,  # VMware
    "001C14": DeviceType.COMPUTER,  # VMware
    "080027": DeviceType.COMPUTER,  # VirtualBox
    "0003FF": DeviceType.COMPUTER,  # Microsoft Virtual PC
    "00155D": DeviceType.COMPUTER,  # Hyper-V
    "525400": DeviceType.COMPUTER,  # QEMU/KVM
    "020000": DeviceType.COMPUTER,
    # Desktop NICs
    "001B21": DeviceType.COMPUTER,  # Intel
    "0019D1": DeviceType.COMPUTER,  # Intel
    "001E65": DeviceType.COMPUTER,  # Intel
    "0024D7": DeviceType.COMPUTER,  # Intel
    "7085C2": DeviceType.COMPUTER,
    "B42E99": DeviceType.COMPUTER,
    "D05099": DeviceType.COMPUTER,
    "E4B318": DeviceType.COMPUTER,
    "F0DEF1": DeviceType.COMPUTER,
    "001AA0": DeviceType.COMPUTER,
    "E0CB4E": DeviceType.COMPUTER,
    "E85C5F": DeviceType.COMPUTER,
    "7CB566": DeviceType.COMPUTER,
    "9C2DCD": DeviceType.COMPUTER,
    "34CE00": DeviceType.COMPUTER,
    "8C18D9": DeviceType.COMPUTER,
    "8CBD37": DeviceType.COMPUTER,
    "EC4D3E": DeviceType.COMPUTER,
    "286C07": DeviceType.COMPUTER,
    # Printers
    "00BB01": DeviceType.PRINTER,  # Brother
    "008037": DeviceType.PRINTER,
    "00A0B0": DeviceType.PRINTER,
    "001E4F": DeviceType.PRINTER,
    "009027": DeviceType.PRINTER,
    "B499BA": DeviceType.PRINTER,  # HP
    "001CF0": DeviceType.PRINTER,
    "04F021": DeviceType.PRINTER,
    # Phones
    "001E52": DeviceType.PHONE,  # Apple
    "001F5B": DeviceType.PHONE,
    "002312": DeviceType.PHONE,
    "002332": DeviceType.PHONE,
    "002436": DeviceType.PHONE,
    "002500": DeviceType.PHONE,
    "0025BC": DeviceType.PHONE,
    "28E02C": DeviceType.PHONE,
    "40A6D9": DeviceType.PHONE,
    "64B9E8": DeviceType.PHONE,
    "78A3E4": DeviceType.PHONE,
    "8C2937": DeviceType.PHONE,
    "A45E60": DeviceType.PHONE,
    "B8E856": DeviceType.PHONE,
    "D0E140": DeviceType.PHONE,
    "F0DBE2": DeviceType.PHONE,
    "F81EDF": DeviceType.PHONE,
    "FC253F": DeviceType.PHONE,
    "001E10": DeviceType.PHONE,  # Samsung
    "002454": DeviceType.PHONE,
    "0025E5": DeviceType.PHONE,
    "78D6F0": DeviceType.PHONE,
    "E8039A": DeviceType.PHONE,
    # Cameras
    "4419B6": DeviceType.CAMERA,  # Hikvision
    "3CEF8C": DeviceType.CAMERA,  # Dahua
    "001E06": DeviceType.CAMERA,
    # IoT
    "4C11AE": DeviceType.IOT,  # Espressif
    "001788": DeviceType.IOT,  # Philips Hue
    "B827EB": DeviceType.IOT,  # Raspberry Pi
}

# MA-M blocks share a 6-digit OUI, so they need 8 digits to tell apart
MAC_PREFIX8_TYPES = {
    "001BC500": DeviceType.IOT,
    "70B3D512": DeviceType.IOT,
    "8C1F640A": DeviceType.CAMERA,
}

# Checked in order
HOSTNAME_TOKENS = [
    (("router", "gateway"), DeviceType.ROUTER),
    (("switch",), DeviceType.SWITCH),
    (("printer", "print"), DeviceType.PRINTER),
    (("server",), DeviceType.SERVER),
    (("camera", "cam"), DeviceType.CAMERA),
    (("phone", "mobile"), DeviceType.PHONE),
    (("tablet", "ipad"), DeviceType.TABLET),
    (("desktop", "pc", "laptop"), DeviceType.COMPUTER),
]

FINGERPRINT_PORTS = (22, 23, 53, 80, 135, 139, 443, 445, 554, 631, 993, 995,
                     1433, 3306, 3389, 5432, 5900, 8080, 9100)


def classify_by_mac(mac_address: Optional[str]) -> DeviceType:
    digits = normalize_mac(mac_address)
    if digits is None:
        return DeviceType.UNKNOWN
    prefix6 = digits[:6]
    if prefix6 in MAC_PREFIX_TYPES:
        return MAC_PREFIX_TYPES[prefix6]
    return MAC_PREFIX8_TYPES.get(digits[:8], DeviceType.UNKNOWN)


def classify_by_hostname(hostname: Optional[str]) -> DeviceType:
    if not hostname:
        return DeviceType.UNKNOWN
    hostname_lower = hostname.lower()
    for tokens, device_type in HOSTNAME_TOKENS:
        if any(token in hostname_lower for token in tokens):
            return device_type
    return DeviceType.UNKNOWN


def classify_by_ports(open_ports: Iterable[int]) -> DeviceType:
    ports: Set[int] = set(open_ports)
    if ports & {80, 443}:
        if ports & {22, 23}:
            return DeviceType.ROUTER
        if ports & {631, 9100}:
            return DeviceType.PRINTER
        if ports & {554, 8080}:
            return DeviceType.CAMERA
    if ports & {3389, 5900}:
        return DeviceType.COMPUTER
    if 22 in ports and ports & {3306, 5432, 1433}:
        return DeviceType.SERVER
    return DeviceType.UNKNOWN


class DeviceClassifier:
    """Assigns a coarse DeviceType to a live host."""

    def __init__(self, port_timeout: float = 1.0, ports: Iterable[int] = FINGERPRINT_PORTS):
        self.port_timeout = port_timeout
        self.ports = tuple(ports)

    async def classify(self, ip_address: str, mac_address: Optional[str],
                       hostname: Optional[str] = None) -> DeviceType:
        """
        Classify a host. Never raises; falls back to DeviceType.UNKNOWN.

        The port fingerprint is only probed when neither the MAC tables
        nor the hostname gave an answer.
        """
        try:
            device_type = classify_by_mac(mac_address)
            if device_type is not DeviceType.UNKNOWN:
                logger.debug(f"{ip_address}: MAC prefix match -> {device_type.value}")
                return device_type

            device_type = classify_by_hostname(hostname)
            if device_type is not DeviceType.UNKNOWN:
                logger.debug(f"{ip_address}: hostname {hostname!r} -> {device_type.value}")
                return device_type

            open_ports = await self.probe_open_ports(ip_address)
            device_type = classify_by_ports(open_ports)
            logger.debug(f"{ip_address}: open ports {open_ports} -> {device_type.value}")
            return device_type
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Device type classification failed for {ip_address}: {e}")
            return DeviceType.UNKNOWN

    async def probe_open_ports(self, ip: str) -> List[int]:
        """Concurrent TCP connect probe of the fingerprint ports."""

        async def check_port(port: int) -> Optional[int]:
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(ip, port),
                    timeout=self.port_timeout
                )
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass
                return port
            except (asyncio.TimeoutError, ConnectionRefusedError, OSError):
                return None

        results = await asyncio.gather(*[check_port(p) for p in self.ports])
        return sorted(p for p in results if p is not None)
