import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from ..core.errors import PersistenceConflict
from ..db.records import DeviceRecord, DeviceType, utcnow
from ..db.registry import DeviceRegistry
from ..wol.magic_packet import format_mac, normalize_mac
from .network_sweeper import DiscoveredHost, NetworkSweeper, network_prefix

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
NIC_REPLACED = "nic_replaced"
DUPLICATE = "duplicate"
SKIPPED = "skipped"


@dataclass
class ReconcileSummary:
    """Counts for one reconciliation pass or on-demand discovery."""
    ranges_scanned: int = 0
    discovered: int = 0
    created: int = 0
    updated: int = 0
    nic_replaced: int = 0
    duplicates: int = 0
    skipped: int = 0
    conflicts: int = 0
    demoted: int = 0

    def add(self, other: "ReconcileSummary") -> "ReconcileSummary":
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)
        return self

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def network_ranges_for(devices: Iterable[DeviceRecord]) -> List[str]:
    """One ``a.b.c.1-254`` range per distinct /24 prefix among known devices."""
    prefixes = {network_prefix(d.ip_address) for d in devices}
    return [f"{prefix}.1-254" for prefix in sorted(p for p in prefixes if p)]


class RegistryMerge:
    """
    In-memory merge of discovered hosts into a registry snapshot.

    Works on copies; nothing is written until the caller persists
    ``changed()``. Devices are matched by normalized MAC, never by raw
    string.
    """

    def __init__(self, devices: Iterable[DeviceRecord], now: Optional[datetime] = None):
        self.now = now or utcnow()
        self._by_mac: Dict[str, DeviceRecord] = {}
        self._by_ip: Dict[str, DeviceRecord] = {}
        self._dirty: Dict[int, DeviceRecord] = {}
        for device in devices:
            device = device.copy()
            key = normalize_mac(device.mac_address)
            if key:
                self._by_mac[key] = device
            if device.ip_address:
                self._by_ip[device.ip_address] = device

    def changed(self) -> List[DeviceRecord]:
        return list(self._dirty.values())

    def _touch(self, device: DeviceRecord):
        device.last_seen_at = self.now
        device.updated_at = self.now
        self._dirty[id(device)] = device

    def merge(self, host: DiscoveredHost, processed: Set[str]) -> str:
        """
        Merge one host. ``processed`` holds the normalized MACs already
        merged in this run; a repeat observation is ignored.
        """
        mac_key = normalize_mac(host.mac_address)
        if mac_key is None:
            logger.warning(f"Skipping host without a usable MAC: {host.name} ({host.ip_address})")
            return SKIPPED
        if mac_key in processed:
            logger.debug(f"Skipping duplicate MAC {host.mac_address} ({host.ip_address}) in this run")
            return DUPLICATE
        processed.add(mac_key)

        existing = self._by_mac.get(mac_key)
        if existing is None:
            owner = self._by_ip.get(host.ip_address)
            if owner is not None:
                # Same IP, unknown MAC: treat as the same machine with a new NIC
                logger.warning(
                    f"IP conflict: {host.name} ({host.mac_address}) reports {host.ip_address}, "
                    f"owned by {owner.name} ({owner.mac_address}); updating that device's MAC"
                )
                self._by_mac.pop(normalize_mac(owner.mac_address) or "", None)
                owner.mac_address = format_mac(mac_key)
                owner.name = host.name
                owner.device_type = host.device_type
                owner.status = host.status
                self._by_mac[mac_key] = owner
                self._touch(owner)
                return NIC_REPLACED

            device = DeviceRecord(
                name=host.name,
                ip_address=host.ip_address,
                mac_address=format_mac(mac_key),
                device_type=host.device_type,
                status=host.status,
                last_seen_at=self.now,
                created_at=self.now,
                updated_at=self.now,
            )
            self._by_mac[mac_key] = device
            self._by_ip[host.ip_address] = device
            self._touch(device)
            logger.info(f"New device: {device.name} (MAC: {device.mac_address}, IP: {device.ip_address})")
            return CREATED

        old_ip = existing.ip_address
        if old_ip != host.ip_address:
            other = self._by_ip.get(host.ip_address)
            if other is not None and other is not existing:
                logger.warning(
                    f"{existing.name} now reports {host.ip_address}, which belongs to {other.name}; "
                    f"keeping old IP {old_ip}"
                )
            else:
                logger.info(f"Device {existing.name} IP changed: {old_ip} -> {host.ip_address}")
                if self._by_ip.get(old_ip) is existing:
                    del self._by_ip[old_ip]
                existing.ip_address = host.ip_address
                self._by_ip[host.ip_address] = existing

        existing.status = host.status
        if host.device_type is not DeviceType.UNKNOWN:
            existing.device_type = host.device_type
        # Only replace names that were never set by a person
        if not existing.name or existing.name == old_ip:
            existing.name = host.name
        self._touch(existing)
        return UPDATED


class DiscoveryReconciler:
    """
    Periodic network discovery merged into the device registry.

    A cancellable background task runs ``run_once`` on a fixed interval;
    ``trigger`` asks for an early run through the same path.
    """

    def __init__(self, registry: DeviceRegistry, sweeper: Optional[NetworkSweeper] = None,
                 interval: float = 30 * 60, error_backoff: float = 5 * 60,
                 offline_threshold: float = 60 * 60,
                 default_ranges: Sequence[str] = ("192.168.1.1-254", "192.168.0.1-254"),
                 concurrency: int = 20, refresh_ping_timeout: float = 0.4,
                 clock: Callable[[], datetime] = utcnow):
        self.registry = registry
        self.sweeper = sweeper or NetworkSweeper()
        self.interval = interval
        self.error_backoff = error_backoff
        self.offline_threshold = timedelta(seconds=offline_threshold)
        self.default_ranges = list(default_ranges)
        self.refresh_ping_timeout = refresh_ping_timeout
        self.clock = clock
        self._limiter = asyncio.Semaphore(concurrency)
        self._merge_lock = asyncio.Lock()
        self._trigger = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_summary: Optional[ReconcileSummary] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background discovery loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="discovery-reconciler")
        logger.info(f"Discovery reconciler started (interval: {self.interval}s)")

    async def stop(self):
        """Stop the loop; an in-flight sweep is cancelled."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Discovery reconciler stopped")

    def trigger(self):
        """Request a reconciliation pass ahead of schedule."""
        self._trigger.set()

    async def _run_loop(self):
        while self._running:
            try:
                await self.run_once()
                delay = self.interval
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Device discovery failed; retrying in {self.error_backoff}s")
                delay = self.error_backoff

            try:
                await asyncio.wait_for(self._trigger.wait(), timeout=delay)
                logger.info("On-demand discovery requested")
            except asyncio.TimeoutError:
                pass
            self._trigger.clear()

    async def run_once(self) -> ReconcileSummary:
        """
        One full pass: sweep every range, merge each range's results and
        persist them before moving to the next, then demote stale devices.
        """
        logger.info("Starting device discovery")
        summary = ReconcileSummary()
        ranges = network_ranges_for(await self.registry.list_all()) or list(self.default_ranges)
        processed: Set[str] = set()

        for network_range in ranges:
            try:
                logger.info(f"Scanning network range {network_range}")
                hosts = await self.sweeper.discover(network_range, limiter=self._limiter)
                summary.add(await self._merge_range(network_range, hosts, processed))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Error while scanning network range {network_range}")

        summary.demoted = len(await self.demote_stale())
        self.last_summary = summary
        self.last_run_at = self.clock()
        logger.info(f"Device discovery complete: {summary.as_dict()}")
        return summary

    async def discover(self, network_range: str) -> ReconcileSummary:
        """On-demand sweep of one range, merged with the same policy."""
        hosts = await self.sweeper.discover(network_range, limiter=self._limiter)
        return await self._merge_range(network_range, hosts, set())

    async def _merge_range(self, network_range: str, hosts: List[DiscoveredHost],
                           processed: Set[str]) -> ReconcileSummary:
        summary = ReconcileSummary(ranges_scanned=1, discovered=len(hosts))
        seen_this_range: Set[str] = set(processed)

        async with self._merge_lock:
            merge = RegistryMerge(await self.registry.list_all(), now=self.clock())
            for host in hosts:
                outcome = merge.merge(host, seen_this_range)
                setattr(summary, _COUNTERS[outcome], getattr(summary, _COUNTERS[outcome]) + 1)

            changed = merge.changed()
            try:
                await self.registry.save_batch(changed)
            except PersistenceConflict as e:
                logger.error(f"Uniqueness conflict saving range {network_range}, discarding its changes: {e}")
                return ReconcileSummary(ranges_scanned=1, discovered=len(hosts), conflicts=1)

        processed |= seen_this_range
        logger.info(f"Network range {network_range} saved ({len(changed)} devices written)")
        return summary

    async def demote_stale(self) -> List[DeviceRecord]:
        """Online devices not seen within the staleness threshold become Offline."""
        threshold = self.clock() - self.offline_threshold
        demoted = await self.registry.mark_stale_offline(threshold)
        for device in demoted:
            logger.info(f"Device {device.name} ({device.ip_address}) marked offline")
        return demoted

    async def refresh_status(self, device_ids: Optional[Iterable[int]] = None) -> Dict[str, int]:
        """
        Quick liveness refresh of known devices with the short ping
        timeout. Reachable devices become Online; nothing is demoted here.
        """
        devices = await self.registry.list_all()
        if device_ids is not None:
            wanted = set(device_ids)
            devices = [d for d in devices if d.id in wanted]

        async def check(device: DeviceRecord) -> bool:
            async with self._limiter:
                return await self.sweeper.ping(device.ip_address, timeout=self.refresh_ping_timeout)

        results = await asyncio.gather(*[check(d) for d in devices])
        reachable = [d.id for d, alive in zip(devices, results) if alive]

        # Status columns only; IP, name and type may have changed during the pings
        async with self._merge_lock:
            marked = await self.registry.mark_online(reachable, now=self.clock())
        return {"checked": len(devices), "online": len(marked)}


_COUNTERS = {
    CREATED: "created",
    UPDATED: "updated",
    NIC_REPLACED: "nic_replaced",
    DUPLICATE: "duplicates",
    SKIPPED: "skipped",
}
