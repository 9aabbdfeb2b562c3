"""
Device registry backed by the async SQLAlchemy session factory.

Every public method is one unit of work: it opens a session, does its
reads or writes, commits and closes. No session outlives a call, so no
database lock is ever held across network I/O.

MAC addresses are stored in canonical ``AA:BB:CC:DD:EE:FF`` form and all
lookups canonicalize their argument first, so callers may pass any of the
accepted textual formats.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, desc, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.errors import PersistenceConflict
from ..wol.magic_packet import format_mac, normalize_mac
from .database import AsyncSessionLocal, with_db_retry
from .models import Device, DeviceRelation, MagicPacketCapture, PowerOperation
from .records import (
    CaptureRecord,
    DeviceRecord,
    DeviceRelationRecord,
    DeviceStatus,
    PowerOperationRecord,
    RelationType,
    utcnow,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def canonical_mac(mac: str) -> str:
    digits = normalize_mac(mac)
    return format_mac(digits) if digits else mac.strip().upper()


def _device_record(row: Device) -> DeviceRecord:
    return DeviceRecord(
        id=row.id,
        name=row.name or "",
        ip_address=row.ip_address,
        mac_address=row.mac_address,
        device_type=row.device_type,
        status=row.status,
        last_seen_at=_aware(row.last_seen_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        wake_on_lan_enabled=bool(row.wake_on_lan_enabled),
        manufacturer=row.manufacturer,
        description=row.description,
    )


def _capture_record(row: MagicPacketCapture) -> CaptureRecord:
    return CaptureRecord(
        id=row.id,
        target_mac_address=row.target_mac_address,
        source_ip_address=row.source_ip_address,
        captured_at=_aware(row.captured_at),
        packet_size_bytes=row.packet_size_bytes,
        is_valid=row.is_valid,
        matched_device_id=row.matched_device_id,
        matched_device_name=row.matched_device_name,
        notes=row.notes,
    )


def _relation_record(row: DeviceRelation) -> DeviceRelationRecord:
    return DeviceRelationRecord(
        id=row.id,
        parent_device_id=row.parent_device_id,
        child_device_id=row.child_device_id,
        relation_type=row.relation_type,
        description=row.description,
    )


def _apply(row: Device, record: DeviceRecord) -> None:
    row.name = record.name
    row.ip_address = record.ip_address
    row.mac_address = canonical_mac(record.mac_address)
    row.device_type = record.device_type
    row.status = record.status
    row.last_seen_at = record.last_seen_at
    row.created_at = record.created_at
    row.updated_at = record.updated_at
    row.wake_on_lan_enabled = record.wake_on_lan_enabled
    row.manufacturer = record.manufacturer
    row.description = record.description


class DeviceRegistry:
    """Device, capture, relation and power-operation store."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    # Devices

    async def get(self, device_id: int) -> Optional[DeviceRecord]:
        async with self._session_factory() as session:
            row = await session.get(Device, device_id)
            return _device_record(row) if row else None

    async def find_by_mac(self, mac_address: str) -> Optional[DeviceRecord]:
        digits = normalize_mac(mac_address)
        if digits is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(
                select(Device).where(Device.mac_address == format_mac(digits))
            )
            row = result.scalar_one_or_none()
            return _device_record(row) if row else None

    async def find_by_ip(self, ip_address: str) -> Optional[DeviceRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Device).where(Device.ip_address == ip_address.strip())
            )
            row = result.scalar_one_or_none()
            return _device_record(row) if row else None

    async def list_all(self) -> List[DeviceRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(Device).order_by(Device.id))
            return [_device_record(row) for row in result.scalars().all()]

    async def search(self, online_only: bool = False, search: Optional[str] = None,
                     skip: int = 0, limit: int = 100) -> Tuple[int, List[DeviceRecord]]:
        query = select(Device)
        if online_only:
            query = query.where(Device.status == DeviceStatus.ONLINE)
        if search:
            term = f"%{search}%"
            query = query.where(or_(
                Device.name.ilike(term),
                Device.ip_address.ilike(term),
                Device.mac_address.ilike(term),
                Device.manufacturer.ilike(term),
            ))
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(query.subquery()))
            result = await session.execute(
                query.order_by(desc(Device.last_seen_at)).offset(skip).limit(limit)
            )
            return total or 0, [_device_record(row) for row in result.scalars().all()]

    async def upsert(self, record: DeviceRecord) -> DeviceRecord:
        """Insert or update one device atomically."""
        saved = await self.save_batch([record])
        return saved[0]

    @with_db_retry()
    async def save_batch(self, records: Iterable[DeviceRecord]) -> List[DeviceRecord]:
        """
        Insert or update several devices in one transaction.

        Devices may trade addresses inside one batch (A takes the IP that
        B gave up). Rows whose IP or MAC changes are parked on a
        placeholder and flushed before the real values are written, since
        SQLite checks uniqueness row by row.

        Raises:
            PersistenceConflict: a MAC or IP uniqueness violation. Nothing
                from the batch is kept.
        """
        records = list(records)
        if not records:
            return []
        async with self._session_factory() as session:
            try:
                pending = []
                for record in records:
                    row = await session.get(Device, record.id) if record.id is not None else None
                    pending.append((row, record))

                moving = False
                for row, record in pending:
                    if row is None:
                        continue
                    if row.ip_address != record.ip_address:
                        row.ip_address = f"moving:{row.id}"
                        moving = True
                    if row.mac_address != canonical_mac(record.mac_address):
                        row.mac_address = f"~{row.id}"
                        moving = True
                if moving:
                    await session.flush()

                rows = []
                for row, record in pending:
                    if row is None:
                        row = Device()
                        session.add(row)
                    _apply(row, record)
                    rows.append(row)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise PersistenceConflict(str(e.orig)) from e
            return [_device_record(row) for row in rows]

    @with_db_retry()
    async def mark_online(self, device_ids: Iterable[int], now: Optional[datetime] = None) -> List[DeviceRecord]:
        """
        Set status Online and refresh lastSeenAt for ``device_ids``.

        Touches only the status and timestamp columns, so concurrent
        changes to IP, MAC, name or type are kept.
        """
        ids = list(device_ids)
        if not ids:
            return []
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(select(Device).where(Device.id.in_(ids)))
            rows = result.scalars().all()
            for row in rows:
                row.status = DeviceStatus.ONLINE
                row.last_seen_at = now
                row.updated_at = now
            await session.commit()
            return [_device_record(row) for row in rows]

    @with_db_retry()
    async def mark_stale_offline(self, threshold: datetime) -> List[DeviceRecord]:
        """Move Online devices last seen before ``threshold`` to Offline."""
        threshold = _aware(threshold)
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Device).where(Device.status == DeviceStatus.ONLINE)
            )
            stale = [row for row in result.scalars().all()
                     if row.last_seen_at is not None and _aware(row.last_seen_at) < threshold]
            for row in stale:
                row.status = DeviceStatus.OFFLINE
                row.updated_at = now
            if stale:
                await session.commit()
            return [_device_record(row) for row in stale]

    # Magic packet captures

    @with_db_retry()
    async def append_capture(self, capture: CaptureRecord) -> CaptureRecord:
        async with self._session_factory() as session:
            row = MagicPacketCapture(
                target_mac_address=capture.target_mac_address,
                source_ip_address=capture.source_ip_address,
                captured_at=capture.captured_at,
                packet_size_bytes=capture.packet_size_bytes,
                is_valid=capture.is_valid,
                matched_device_id=capture.matched_device_id,
                matched_device_name=capture.matched_device_name,
                notes=capture.notes,
            )
            session.add(row)
            await session.commit()
            return _capture_record(row)

    async def list_captures(self, since: Optional[datetime] = None, page: int = 1,
                            page_size: int = 50) -> Tuple[int, List[CaptureRecord]]:
        query = select(MagicPacketCapture)
        if since is not None:
            query = query.where(MagicPacketCapture.captured_at > since)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(query.subquery()))
            result = await session.execute(
                query.order_by(desc(MagicPacketCapture.captured_at), desc(MagicPacketCapture.id))
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            )
            return total or 0, [_capture_record(row) for row in result.scalars().all()]

    async def recent_captures(self, count: int = 10) -> List[CaptureRecord]:
        _, captures = await self.list_captures(page=1, page_size=count)
        return captures

    async def capture_stats(self) -> Dict[str, object]:
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count(MagicPacketCapture.id)))
            today_count = await session.scalar(
                select(func.count(MagicPacketCapture.id)).where(MagicPacketCapture.captured_at >= today)
            )
            valid = await session.scalar(
                select(func.count(MagicPacketCapture.id)).where(MagicPacketCapture.is_valid.is_(True))
            )
            matched = await session.scalar(
                select(func.count(MagicPacketCapture.id)).where(MagicPacketCapture.matched_device_id.is_not(None))
            )
            result = await session.execute(
                select(MagicPacketCapture)
                .order_by(desc(MagicPacketCapture.captured_at), desc(MagicPacketCapture.id))
                .limit(1)
            )
            last = result.scalar_one_or_none()
        return {
            "total_captures": total or 0,
            "today_captures": today_count or 0,
            "valid_captures": valid or 0,
            "matched_captures": matched or 0,
            "last_capture": _capture_record(last) if last else None,
        }

    @with_db_retry()
    async def delete_captures_before(self, before: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(MagicPacketCapture).where(MagicPacketCapture.captured_at < before)
            )
            await session.commit()
            return result.rowcount or 0

    # Device relations (edge list)

    async def add_relation(self, relation: DeviceRelationRecord) -> DeviceRelationRecord:
        async with self._session_factory() as session:
            row = DeviceRelation(
                parent_device_id=relation.parent_device_id,
                child_device_id=relation.child_device_id,
                relation_type=relation.relation_type,
                description=relation.description,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise PersistenceConflict(str(e.orig)) from e
            return _relation_record(row)

    async def update_relation(self, relation_id: int, relation_type: RelationType,
                              description: Optional[str] = None) -> Optional[DeviceRelationRecord]:
        async with self._session_factory() as session:
            row = await session.get(DeviceRelation, relation_id)
            if row is None:
                return None
            row.relation_type = relation_type
            row.description = description
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise PersistenceConflict(str(e.orig)) from e
            return _relation_record(row)

    async def delete_relation(self, relation_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DeviceRelation).where(DeviceRelation.id == relation_id)
            )
            await session.commit()
            return bool(result.rowcount)

    async def children_of(self, device_id: int) -> List[DeviceRelationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceRelation).where(DeviceRelation.parent_device_id == device_id)
            )
            return [_relation_record(row) for row in result.scalars().all()]

    async def parents_of(self, device_id: int) -> List[DeviceRelationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceRelation).where(DeviceRelation.child_device_id == device_id)
            )
            return [_relation_record(row) for row in result.scalars().all()]

    # Power operations

    @with_db_retry()
    async def record_power_operation(self, operation: PowerOperationRecord) -> PowerOperationRecord:
        """Insert a new operation, or update it when ``operation.id`` is set."""
        async with self._session_factory() as session:
            row = await session.get(PowerOperation, operation.id) if operation.id is not None else None
            if row is None:
                row = PowerOperation()
                session.add(row)
            row.device_id = operation.device_id
            row.operation = operation.operation
            row.result = operation.result
            row.result_message = operation.result_message
            row.requested_by = operation.requested_by
            row.requested_at = operation.requested_at
            row.completed_at = operation.completed_at
            await session.commit()
            operation.id = row.id
            return operation
