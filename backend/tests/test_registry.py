"""Tests for the SQLAlchemy-backed device registry."""

import pytest
from datetime import timedelta

from netwake.core.errors import PersistenceConflict
from netwake.db.records import (
    CaptureRecord,
    DeviceRelationRecord,
    DeviceStatus,
    PowerOperationRecord,
    PowerOperationResult,
    PowerOperationType,
    RelationType,
    utcnow,
)


class TestDevices:
    """Device persistence"""

    @pytest.mark.asyncio
    async def test_upsert_and_find(self, registry, make_device):
        saved = await registry.upsert(make_device(mac="aa-bb-cc-dd-ee-01"))
        assert saved.id is not None
        assert saved.mac_address == "AA:BB:CC:DD:EE:01"

        assert (await registry.find_by_mac("aabbccddee01")).id == saved.id
        assert (await registry.find_by_ip("192.168.1.10")).id == saved.id
        assert (await registry.get(saved.id)).name == "host-10"

    @pytest.mark.asyncio
    async def test_find_missing(self, registry):
        assert await registry.find_by_mac("AA:BB:CC:DD:EE:FF") is None
        assert await registry.find_by_mac("garbage") is None
        assert await registry.get(42) is None

    @pytest.mark.asyncio
    async def test_upsert_updates_existing(self, registry, make_device):
        saved = await registry.upsert(make_device())
        saved.name = "renamed"
        await registry.upsert(saved)
        assert len(await registry.list_all()) == 1
        assert (await registry.get(saved.id)).name == "renamed"

    @pytest.mark.asyncio
    async def test_timestamps_are_aware(self, registry, make_device):
        saved = await registry.upsert(make_device())
        device = await registry.get(saved.id)
        assert device.last_seen_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_duplicate_ip_conflict(self, registry, make_device):
        await registry.upsert(make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01"))
        with pytest.raises(PersistenceConflict):
            await registry.upsert(make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:02"))

    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self, registry, make_device):
        """A conflict anywhere in a batch keeps none of it"""
        await registry.upsert(make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01"))
        with pytest.raises(PersistenceConflict):
            await registry.save_batch([
                make_device(ip="10.0.0.2", mac="AA:BB:CC:DD:EE:02"),
                make_device(ip="10.0.0.3", mac="AA:BB:CC:DD:EE:01"),
            ])
        assert len(await registry.list_all()) == 1

    @pytest.mark.asyncio
    async def test_batch_moves_ip_freed_in_same_batch(self, registry, make_device):
        """Row order does not matter when one device takes another's old IP"""
        a, b = await registry.save_batch([
            make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01"),
            make_device(ip="10.0.0.2", mac="AA:BB:CC:DD:EE:02"),
        ])
        a.ip_address, b.ip_address = "10.0.0.2", "10.0.0.3"
        await registry.save_batch([a, b])
        assert (await registry.find_by_ip("10.0.0.2")).id == a.id
        assert (await registry.find_by_ip("10.0.0.3")).id == b.id

    @pytest.mark.asyncio
    async def test_batch_reuses_mac_freed_in_same_batch(self, registry, make_device):
        old = await registry.upsert(make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01"))
        old.mac_address = "AA:BB:CC:DD:EE:99"
        await registry.save_batch([make_device(ip="10.0.0.7", mac="AA:BB:CC:DD:EE:01"), old])
        assert (await registry.find_by_mac("AA:BB:CC:DD:EE:01")).ip_address == "10.0.0.7"
        assert (await registry.get(old.id)).mac_address == "AA:BB:CC:DD:EE:99"

    @pytest.mark.asyncio
    async def test_mark_online_touches_status_only(self, registry, make_device):
        saved = await registry.upsert(make_device(name="nas", status=DeviceStatus.OFFLINE,
                                                  age=timedelta(hours=3)))
        now = utcnow()
        (marked,) = await registry.mark_online([saved.id], now=now)
        assert marked.status == DeviceStatus.ONLINE
        assert marked.last_seen_at == now
        assert (marked.name, marked.ip_address, marked.mac_address) == (saved.name, saved.ip_address, saved.mac_address)
        assert await registry.mark_online([]) == []

    @pytest.mark.asyncio
    async def test_search(self, registry, make_device):
        await registry.save_batch([
            make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01", name="nas"),
            make_device(ip="10.0.0.2", mac="AA:BB:CC:DD:EE:02", name="printer", status=DeviceStatus.OFFLINE),
        ])
        total, devices = await registry.search(online_only=True)
        assert total == 1 and devices[0].name == "nas"

        total, devices = await registry.search(search="print")
        assert total == 1 and devices[0].name == "printer"

    @pytest.mark.asyncio
    async def test_mark_stale_offline(self, registry, make_device):
        await registry.save_batch([
            make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01", age=timedelta(hours=2)),
            make_device(ip="10.0.0.2", mac="AA:BB:CC:DD:EE:02", age=timedelta(minutes=5)),
            make_device(ip="10.0.0.3", mac="AA:BB:CC:DD:EE:03", age=timedelta(hours=3),
                        status=DeviceStatus.MAINTENANCE),
        ])
        demoted = await registry.mark_stale_offline(utcnow() - timedelta(hours=1))
        assert [d.ip_address for d in demoted] == ["10.0.0.1"]

        statuses = {d.ip_address: d.status for d in await registry.list_all()}
        assert statuses == {
            "10.0.0.1": DeviceStatus.OFFLINE,
            "10.0.0.2": DeviceStatus.ONLINE,
            "10.0.0.3": DeviceStatus.MAINTENANCE,
        }


def _capture(mac="AA:BB:CC:DD:EE:FF", valid=True, age=timedelta(0), device_id=None):
    return CaptureRecord(
        target_mac_address=mac,
        source_ip_address="192.168.1.50",
        captured_at=utcnow() - age,
        packet_size_bytes=102 if valid else 90,
        is_valid=valid,
        matched_device_id=device_id,
    )


class TestCaptures:
    """Magic packet capture log"""

    @pytest.mark.asyncio
    async def test_append_and_list_newest_first(self, registry):
        await registry.append_capture(_capture(age=timedelta(minutes=5)))
        latest = await registry.append_capture(_capture(mac="AA:BB:CC:DD:EE:01"))
        assert latest.id is not None

        total, captures = await registry.list_captures()
        assert total == 2
        assert captures[0].target_mac_address == "AA:BB:CC:DD:EE:01"

    @pytest.mark.asyncio
    async def test_list_since_and_paging(self, registry):
        for minutes in (30, 20, 10):
            await registry.append_capture(_capture(age=timedelta(minutes=minutes)))
        total, captures = await registry.list_captures(since=utcnow() - timedelta(minutes=25))
        assert total == 2

        total, page = await registry.list_captures(page=2, page_size=2)
        assert total == 3 and len(page) == 1

    @pytest.mark.asyncio
    async def test_stats(self, registry):
        await registry.append_capture(_capture(device_id=1))
        await registry.append_capture(_capture(valid=False))
        stats = await registry.capture_stats()
        assert stats["total_captures"] == 2
        assert stats["valid_captures"] == 1
        assert stats["matched_captures"] == 1
        assert stats["last_capture"] is not None

    @pytest.mark.asyncio
    async def test_delete_before(self, registry):
        await registry.append_capture(_capture(age=timedelta(days=40)))
        await registry.append_capture(_capture())
        assert await registry.delete_captures_before(utcnow() - timedelta(days=30)) == 1
        assert len(await registry.recent_captures()) == 1


class TestRelationsAndPowerOperations:
    """Relation edges and power audit"""

    @pytest.mark.asyncio
    async def test_relations(self, registry, make_device):
        host, vm = await registry.save_batch([
            make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01"),
            make_device(ip="10.0.0.2", mac="AA:BB:CC:DD:EE:02"),
        ])
        await registry.add_relation(DeviceRelationRecord(host.id, vm.id, RelationType.PHYSICAL_TO_VIRTUAL))

        children = await registry.children_of(host.id)
        assert [r.child_device_id for r in children] == [vm.id]
        parents = await registry.parents_of(vm.id)
        assert parents[0].relation_type == RelationType.PHYSICAL_TO_VIRTUAL

        with pytest.raises(PersistenceConflict):
            await registry.add_relation(DeviceRelationRecord(host.id, vm.id, RelationType.PHYSICAL_TO_VIRTUAL))

    @pytest.mark.asyncio
    async def test_update_and_delete_relation(self, registry, make_device):
        host, switch = await registry.save_batch([
            make_device(ip="10.0.0.1", mac="AA:BB:CC:DD:EE:01"),
            make_device(ip="10.0.0.2", mac="AA:BB:CC:DD:EE:02"),
        ])
        relation = await registry.add_relation(DeviceRelationRecord(switch.id, host.id))

        updated = await registry.update_relation(relation.id, RelationType.NETWORK_SWITCH, "port 4")
        assert updated.relation_type == RelationType.NETWORK_SWITCH
        assert updated.description == "port 4"
        assert await registry.update_relation(999, RelationType.UNKNOWN) is None

        assert await registry.delete_relation(relation.id) is True
        assert await registry.delete_relation(relation.id) is False
        assert await registry.children_of(switch.id) == []

    @pytest.mark.asyncio
    async def test_power_operation_lifecycle(self, registry, make_device):
        device = await registry.upsert(make_device())
        operation = await registry.record_power_operation(
            PowerOperationRecord(device_id=device.id, operation=PowerOperationType.WAKE_ON_LAN)
        )
        assert operation.id is not None
        first_id = operation.id

        operation.result = PowerOperationResult.SUCCESS
        operation.completed_at = utcnow()
        updated = await registry.record_power_operation(operation)
        assert updated.id == first_id


class TestDbRetry:
    """Lock contention backoff"""

    @pytest.mark.asyncio
    async def test_retries_locked_database(self):
        from sqlalchemy.exc import OperationalError
        from netwake.db.database import with_db_retry

        attempts = 0

        @with_db_retry(max_retries=3, delay=0)
        async def write():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise OperationalError("UPDATE devices", {}, Exception("database is locked"))
            return "ok"

        assert await write() == "ok"
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        from sqlalchemy.exc import OperationalError
        from netwake.db.database import with_db_retry

        attempts = 0

        @with_db_retry(max_retries=3, delay=0)
        async def write():
            nonlocal attempts
            attempts += 1
            raise OperationalError("SELECT 1", {}, Exception("no such table: devices"))

        with pytest.raises(OperationalError):
            await write()
        assert attempts == 1
