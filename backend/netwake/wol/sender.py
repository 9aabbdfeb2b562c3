import asyncio
import ipaddress
import logging
import socket
from typing import Optional

from ..core.errors import FormatError, TransientNetworkError
from ..db.records import DeviceRecord
from .magic_packet import build_magic_packet, format_mac, parse_mac_address

logger = logging.getLogger(__name__)


class WakeSender:
    """Sends Wake-on-LAN magic packets. Remote shutdown is not supported."""

    def __init__(self, broadcast_address: str = "255.255.255.255", port: int = 9):
        self.broadcast_address = broadcast_address
        self.port = port

    async def send_wake(self, mac_address: str, ip_address: Optional[str] = None) -> bool:
        """
        Broadcast a magic packet for ``mac_address``, and unicast it to
        ``ip_address`` too when one is given.

        Returns False on a malformed MAC or on any socket error; there is
        no partial success.
        """
        try:
            mac = parse_mac_address(mac_address)
        except FormatError:
            logger.warning(f"Wake-on-LAN: cannot parse MAC address {mac_address!r}")
            return False

        packet = build_magic_packet(mac)
        targets = [(self.broadcast_address, self.port)]
        if ip_address:
            try:
                targets.append((str(ipaddress.IPv4Address(ip_address.strip())), self.port))
            except ValueError:
                logger.warning(f"Wake-on-LAN: ignoring unusable IP {ip_address!r}, broadcast only")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_blocking, packet, targets)
        except TransientNetworkError as e:
            logger.error(f"Wake-on-LAN send to {format_mac(mac)} failed: {e}")
            return False

        logger.info(f"Wake-on-LAN packet for {format_mac(mac)} sent to {', '.join(h for h, _ in targets)}")
        return True

    async def wake_device(self, device: DeviceRecord) -> bool:
        return await self.send_wake(device.mac_address, device.ip_address)

    async def request_shutdown(self, ip_address: str) -> bool:
        """
        Remote shutdown needs an authenticated channel (SSH, WMI, IPMI)
        that is not implemented, so this always reports failure.
        """
        logger.warning(f"Remote shutdown is not supported (requested for {ip_address})")
        return False

    @staticmethod
    def _send_blocking(packet: bytes, targets) -> None:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                for host, port in targets:
                    sock.sendto(packet, (host, port))
        except OSError as e:
            raise TransientNetworkError(str(e)) from e
