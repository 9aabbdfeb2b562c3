import asyncio
import logging
import math
import re
import socket
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from scapy.all import ARP, Ether, srp, conf
from scapy.error import Scapy_Exception

from ..core.errors import TransientNetworkError
from ..db.records import DeviceStatus, DeviceType, utcnow
from ..wol.magic_packet import format_mac, normalize_mac
from .device_classifier import DeviceClassifier

logger = logging.getLogger(__name__)

conf.verb = 0  # Disable scapy verbose output

IS_WINDOWS = sys.platform.startswith("win")

# Matches 00:1b:21:aa:bb:cc, 00-1B-21-AA-BB-CC and macOS style 0:1b:21:a:bb:cc
MAC_PATTERN = re.compile(r"\b((?:[0-9A-Fa-f]{1,2}[:-]){5}[0-9A-Fa-f]{1,2})\b")


@dataclass
class DiscoveredHost:
    """A live host observed by one sweep. Never persisted directly."""
    ip_address: str
    mac_address: str
    hostname: Optional[str] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    status: DeviceStatus = DeviceStatus.ONLINE
    first_observed_at: datetime = field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return self.hostname or self.ip_address


def _octet(text: str) -> Optional[int]:
    text = text.strip()
    if not text.isdigit():
        return None
    value = int(text)
    return value if 0 <= value <= 255 else None


def parse_network_range(network_range: Optional[str]) -> List[str]:
    """
    Expand a range into candidate addresses.

    ``"192.168.1.10-20"`` expands the last octet from 10 to 20 inclusive.
    ``"192.168.1"`` (or ``"192.168.1.0"``) expands to .1-.254.
    Anything malformed yields an empty list.
    """
    if not network_range:
        return []
    text = network_range.strip()

    if "-" in text:
        base, _, end_text = text.partition("-")
        parts = base.strip().split(".")
        if len(parts) != 4:
            return []
        octets = [_octet(p) for p in parts]
        end = _octet(end_text)
        if None in octets or end is None or octets[3] > end:
            return []
        network = ".".join(str(o) for o in octets[:3])
        return [f"{network}.{i}" for i in range(octets[3], end + 1)]

    parts = text.split(".")
    if len(parts) not in (3, 4):
        return []
    octets = [_octet(p) for p in parts[:3]]
    if None in octets or (len(parts) == 4 and _octet(parts[3]) is None):
        return []
    network = ".".join(str(o) for o in octets)
    return [f"{network}.{i}" for i in range(1, 255)]


def network_prefix(ip_address: Optional[str]) -> Optional[str]:
    """``"10.0.0.5"`` -> ``"10.0.0"``; None for anything that is not dotted quad."""
    if not ip_address:
        return None
    parts = ip_address.strip().split(".")
    if len(parts) != 4 or any(_octet(p) is None for p in parts):
        return None
    return ".".join(parts[:3])


def _pad_mac(mac: str) -> Optional[str]:
    octets = re.split(r"[:-]", mac)
    if len(octets) != 6:
        return None
    return normalize_mac("".join(o.zfill(2) for o in octets))


def parse_arp_output(output: str, ip: str) -> Optional[str]:
    """Find the hardware address for ``ip`` in ``arp`` command output."""
    ip_pattern = re.compile(rf"(?<![\d.]){re.escape(ip)}(?![\d.])")
    for line in output.splitlines():
        if not ip_pattern.search(line) or "incomplete" in line.lower():
            continue
        match = MAC_PATTERN.search(line)
        if not match:
            continue
        digits = _pad_mac(match.group(1))
        if digits and digits not in ("FFFFFFFFFFFF", "000000000000"):
            return format_mac(digits)
    return None


class NetworkSweeper:
    """Ping/ARP sweep of an address range."""

    def __init__(self, classifier: Optional[DeviceClassifier] = None,
                 ping_timeout: float = 3.0, arp_timeout: float = 2.0,
                 dns_timeout: float = 2.0, arp_probe: bool = True):
        self.classifier = classifier or DeviceClassifier()
        self.ping_timeout = ping_timeout
        self.arp_timeout = arp_timeout
        self.dns_timeout = dns_timeout
        self.arp_probe = arp_probe

    async def discover(self, network_range: str,
                       limiter: Optional[asyncio.Semaphore] = None) -> List[DiscoveredHost]:
        """
        Sweep a range and return the live hosts that have a MAC address.

        Probes run concurrently, one task per address. Pass ``limiter`` to
        cap how many hosts are probed at once. The result is unordered.
        """
        addresses = parse_network_range(network_range)
        if not addresses:
            logger.warning(f"Ignoring malformed network range: {network_range!r}")
            return []

        async def bounded(ip: str) -> Optional[DiscoveredHost]:
            if limiter is None:
                return await self.probe_host(ip)
            async with limiter:
                return await self.probe_host(ip)

        results = await asyncio.gather(*[bounded(ip) for ip in addresses])
        hosts = [h for h in results if h is not None]
        logger.info(f"Sweep of {network_range}: {len(hosts)} hosts with a MAC out of {len(addresses)} addresses")
        return hosts

    async def probe_host(self, ip: str) -> Optional[DiscoveredHost]:
        """Ping, then resolve MAC, hostname and type. None if down or MAC-less."""
        if not await self.ping(ip):
            return None
        return await self.get_host_info(ip)

    async def get_host_info(self, ip: str) -> Optional[DiscoveredHost]:
        mac = await self.get_mac_address(ip)
        if not mac:
            logger.debug(f"{ip} answered ping but has no ARP entry, dropping")
            return None
        hostname = await self.get_hostname(ip)
        device_type = await self.classifier.classify(ip, mac, hostname)
        return DiscoveredHost(
            ip_address=ip,
            mac_address=mac,
            hostname=hostname,
            device_type=device_type,
        )

    async def ping(self, ip: str, timeout: Optional[float] = None) -> bool:
        """Single ICMP echo. False on timeout or any error."""
        timeout = self.ping_timeout if timeout is None else timeout
        if IS_WINDOWS:
            args = ["ping", "-n", "1", "-w", str(max(1, int(timeout * 1000))), ip]
        else:
            # BusyBox and older iputils only take whole seconds for -W
            args = ["ping", "-c", "1", "-W", str(max(1, math.ceil(timeout))), ip]

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL
            )
            await asyncio.wait_for(process.wait(), timeout=timeout)
            return process.returncode == 0
        except (asyncio.TimeoutError, OSError):
            return False
        finally:
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass

    async def get_mac_address(self, ip: str) -> Optional[str]:
        """
        Resolve the MAC for ``ip``, uppercase colon form or None.

        An ARP probe on the wire is tried first; the system ARP table is
        the fallback when the probe gets no answer or cannot be sent.
        """
        if self.arp_probe:
            loop = asyncio.get_running_loop()
            try:
                mac = await loop.run_in_executor(None, self._arp_probe, ip)
            except TransientNetworkError as e:
                logger.debug(f"ARP probe for {ip} unavailable, using the ARP table: {e}")
                mac = None
            if mac:
                return mac
        return await self._query_arp_table(ip)

    def _arp_probe(self, ip: str) -> Optional[str]:
        """Send one broadcast ARP request for ``ip`` (blocking)."""
        packet = Ether(dst="ff:ff:ff:ff:ff:ff") / ARP(pdst=ip)
        try:
            answered = srp(packet, timeout=self.arp_timeout, verbose=False, retry=1)[0]
        except (OSError, Scapy_Exception) as e:
            # Raw sockets need CAP_NET_RAW
            raise TransientNetworkError(f"ARP probe for {ip} failed: {e}") from e
        for _, received in answered:
            digits = normalize_mac(received.hwsrc)
            if digits:
                return format_mac(digits)
        return None

    async def _query_arp_table(self, ip: str) -> Optional[str]:
        args = ["arp", "-a", ip] if IS_WINDOWS else ["arp", "-n", ip]
        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.arp_timeout)
        except FileNotFoundError:
            return self._read_proc_arp(ip)
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug(f"ARP lookup failed for {ip}: {e}")
            return None
        finally:
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        return parse_arp_output(stdout.decode(errors="ignore"), ip)

    def _read_proc_arp(self, ip: str) -> Optional[str]:
        # Linux hosts without net-tools still expose the neighbour table here
        try:
            with open("/proc/net/arp", "r") as f:
                return parse_arp_output(f.read(), ip)
        except OSError:
            return None

    async def get_hostname(self, ip: str) -> Optional[str]:
        """Reverse DNS, best effort."""
        loop = asyncio.get_running_loop()
        try:
            hostname, _, _ = await asyncio.wait_for(
                loop.run_in_executor(None, socket.gethostbyaddr, ip),
                timeout=self.dns_timeout
            )
            return hostname or None
        except (socket.herror, socket.gaierror, asyncio.TimeoutError, OSError):
            return None
