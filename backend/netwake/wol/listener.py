"""
Passive Wake-on-LAN listener.

Binds UDP sockets on the conventional magic packet ports (7 and 9) and
records every datagram that carries a recognisable target MAC, valid or
not, as a capture. Receiving and processing are decoupled: each socket's
receive loop only copies the datagram into a bounded queue, and a fixed
pool of workers does the registry lookup and capture insert.
"""

import asyncio
import logging
import socket
from typing import Dict, List, Optional, Sequence

from ..core.errors import ListenerBindError
from ..db.records import CaptureRecord, utcnow
from ..db.registry import DeviceRegistry
from .magic_packet import extract_target_mac, validate_magic_packet

logger = logging.getLogger(__name__)

RECEIVE_BUFFER_SIZE = 1024


class MagicPacketListener:
    """Captures magic packets seen on the LAN."""

    def __init__(self, registry: DeviceRegistry, ports: Sequence[int] = (7, 9),
                 bind_address: str = "0.0.0.0", workers: int = 16,
                 queue_size: int = 1024, error_delay: float = 1.0):
        self.registry = registry
        self.ports = list(ports)
        self.bind_address = bind_address
        self.worker_count = max(1, workers)
        self.error_delay = error_delay
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._sockets: Dict[int, socket.socket] = {}
        self._receive_tasks: List[asyncio.Task] = []
        self._worker_tasks: List[asyncio.Task] = []
        self._running = False
        self.dropped_datagrams = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def bound_ports(self) -> Dict[int, int]:
        """Requested port -> actually bound port."""
        return {port: sock.getsockname()[1] for port, sock in self._sockets.items()}

    def _create_socket(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setblocking(False)
            sock.bind((self.bind_address, port))
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> int:
        """
        Bind every configured port and start receiving.

        A port that cannot be bound (usually ports below 1024 without
        privileges) is skipped with a warning.

        Returns:
            Number of ports being monitored

        Raises:
            ListenerBindError: if no port at all could be bound
        """
        if self._running:
            return len(self._sockets)

        for port in self.ports:
            try:
                self._sockets[port] = self._create_socket(port)
                logger.info(f"Listening for magic packets on UDP port {port}")
            except OSError as e:
                logger.warning(f"Cannot listen on UDP port {port} ({e}); this port will not be monitored")

        if not self._sockets:
            logger.error("No magic packet port could be bound; listener disabled")
            raise ListenerBindError(f"Could not bind any of UDP ports {self.ports}")

        self._running = True
        self._worker_tasks = [
            asyncio.create_task(self._worker(i), name=f"magic-packet-worker-{i}")
            for i in range(self.worker_count)
        ]
        self._receive_tasks = [
            asyncio.create_task(self._receive_loop(sock, port), name=f"magic-packet-recv-{port}")
            for port, sock in self._sockets.items()
        ]
        logger.info(f"Magic packet listener running on {len(self._sockets)} port(s)")
        return len(self._sockets)

    async def stop(self):
        """Cancel receive loops, close the sockets, then stop the workers."""
        if not self._running and not self._sockets:
            return
        logger.info("Stopping magic packet listener")
        self._running = False

        for task in self._receive_tasks:
            task.cancel()
        await asyncio.gather(*self._receive_tasks, return_exceptions=True)
        self._receive_tasks = []

        for sock in self._sockets.values():
            sock.close()
        self._sockets = {}

        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []
        logger.info("Magic packet listener stopped")

    async def _receive_loop(self, sock: socket.socket, port: int):
        loop = asyncio.get_running_loop()
        logger.debug(f"Receive loop started on port {port}")
        while self._running:
            try:
                data, address = await loop.sock_recvfrom(sock, RECEIVE_BUFFER_SIZE)
            except asyncio.CancelledError:
                logger.debug(f"Receive loop on port {port} cancelled")
                raise
            except OSError as e:
                logger.error(f"Error receiving on UDP port {port}: {e}")
                await asyncio.sleep(self.error_delay)
                continue

            try:
                self._queue.put_nowait((bytes(data), address[0], port))
            except asyncio.QueueFull:
                self.dropped_datagrams += 1
                logger.warning(f"Magic packet queue full, dropping datagram from {address[0]} on port {port}")

    async def _worker(self, index: int):
        while True:
            data, source_ip, port = await self._queue.get()
            try:
                await self.process_datagram(data, source_ip, port)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Failed to process datagram from {source_ip} on port {port}")
            finally:
                self._queue.task_done()

    async def process_datagram(self, data: bytes, source_ip: str, port: Optional[int] = None) -> Optional[CaptureRecord]:
        """
        Validate, attribute and persist one datagram.

        Returns the stored capture, or None when no target MAC could be
        extracted (the datagram is then discarded).
        """
        is_valid = validate_magic_packet(data)
        target_mac = extract_target_mac(data)
        if not target_mac:
            logger.debug(f"Discarding {len(data)}-byte datagram from {source_ip}: no target MAC")
            return None

        device = await self.registry.find_by_mac(target_mac)
        capture = await self.registry.append_capture(CaptureRecord(
            target_mac_address=target_mac,
            source_ip_address=source_ip,
            captured_at=utcnow(),
            packet_size_bytes=len(data),
            is_valid=is_valid,
            matched_device_id=device.id if device else None,
            matched_device_name=device.name if device else None,
            notes=None if is_valid else "Invalid magic packet format",
        ))

        if is_valid:
            logger.info(
                f"Captured magic packet on port {port}: target {target_mac} from {source_ip}, "
                f"device {device.name if device else 'unknown'}"
            )
        else:
            logger.warning(f"Captured invalid magic packet on port {port} from {source_ip} ({len(data)} bytes)")
        return capture
