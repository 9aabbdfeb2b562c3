from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
from datetime import datetime, timedelta
import logging

from ..core.errors import PersistenceConflict
from ..db.records import (
    DeviceRelationRecord,
    PowerOperationRecord,
    PowerOperationResult,
    PowerOperationType,
    utcnow,
)
from ..db.registry import DeviceRegistry
from ..scanner.network_sweeper import parse_network_range
from ..scanner.oui_lookup import UNKNOWN_VENDOR, MacVendorDirectory
from ..scanner.reconciler import DiscoveryReconciler
from ..wol.listener import MagicPacketListener
from ..wol.sender import WakeSender
from .schemas import (
    CaptureListResponse,
    CaptureResponse,
    CaptureStats,
    CleanupResponse,
    DeviceListResponse,
    DeviceResponse,
    DiscoverRequest,
    DiscoverResponse,
    PowerOperationResponse,
    RefreshRequest,
    RefreshResponse,
    RelationCreate,
    RelationResponse,
    RelationUpdate,
    VendorLookupResponse,
    VendorMappingResponse,
    VendorStats,
    WakeRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# Services are created by the application lifespan and kept on app.state

def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


def get_reconciler(request: Request) -> DiscoveryReconciler:
    return request.app.state.reconciler


def get_sender(request: Request) -> WakeSender:
    return request.app.state.sender


def get_listener(request: Request) -> Optional[MagicPacketListener]:
    return request.app.state.listener


def get_vendors(request: Request) -> MacVendorDirectory:
    return request.app.state.vendors


async def _get_device_or_404(registry: DeviceRegistry, device_id: int):
    device = await registry.get(device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


# Devices

@router.get("/devices", response_model=DeviceListResponse)
async def get_devices(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    online_only: bool = Query(False),
    search: Optional[str] = Query(None),
    registry: DeviceRegistry = Depends(get_registry),
):
    """Get all devices with optional filtering."""
    total, devices = await registry.search(online_only=online_only, search=search, skip=skip, limit=limit)
    return DeviceListResponse(
        devices=[DeviceResponse.model_validate(d) for d in devices],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/devices/{device_id}", response_model=DeviceResponse)
async def get_device(device_id: int, registry: DeviceRegistry = Depends(get_registry)):
    """Get a specific device by ID."""
    return DeviceResponse.model_validate(await _get_device_or_404(registry, device_id))


@router.post("/devices/discover", response_model=DiscoverResponse)
async def discover_devices(
    body: DiscoverRequest,
    reconciler: DiscoveryReconciler = Depends(get_reconciler),
):
    """Sweep one network range now and merge the results into the registry."""
    if not parse_network_range(body.network_range):
        return DiscoverResponse(
            success=False,
            message=f"Invalid network range: {body.network_range}",
            network_range=body.network_range,
        )

    summary = await reconciler.discover(body.network_range)
    if summary.conflicts:
        return DiscoverResponse(
            success=False,
            message="Discovery results conflicted with the registry and were discarded",
            network_range=body.network_range,
            discovered=summary.discovered,
        )
    return DiscoverResponse(
        success=True,
        message=f"Discovered {summary.discovered} devices",
        network_range=body.network_range,
        discovered=summary.discovered,
        new=summary.created,
        updated=summary.updated + summary.nic_replaced,
        skipped=summary.duplicates + summary.skipped,
    )


@router.post("/devices/refresh", response_model=RefreshResponse)
async def refresh_devices(
    body: Optional[RefreshRequest] = None,
    reconciler: DiscoveryReconciler = Depends(get_reconciler),
):
    """Quick reachability check of known devices."""
    result = await reconciler.refresh_status(body.device_ids if body else None)
    return RefreshResponse(success=True, **result)


@router.post("/devices/{device_id}/wake", response_model=PowerOperationResponse)
async def wake_device(
    device_id: int,
    registry: DeviceRegistry = Depends(get_registry),
    sender: WakeSender = Depends(get_sender),
):
    """Send a Wake-on-LAN magic packet to a registered device."""
    device = await _get_device_or_404(registry, device_id)
    operation = await registry.record_power_operation(PowerOperationRecord(
        device_id=device.id,
        operation=PowerOperationType.WAKE_ON_LAN,
        requested_by="api",
    ))

    sent = await sender.wake_device(device)
    operation.result = PowerOperationResult.SUCCESS if sent else PowerOperationResult.FAILED
    operation.result_message = (
        f"Magic packet sent to {device.mac_address}" if sent
        else f"Failed to send magic packet to {device.mac_address}"
    )
    operation.completed_at = utcnow()
    await registry.record_power_operation(operation)

    return PowerOperationResponse(
        success=sent,
        message=operation.result_message,
        device_id=device.id,
        operation_id=operation.id,
    )


@router.post("/devices/{device_id}/shutdown", response_model=PowerOperationResponse)
async def shutdown_device(
    device_id: int,
    registry: DeviceRegistry = Depends(get_registry),
    sender: WakeSender = Depends(get_sender),
):
    """Request a remote shutdown. Always reported as not supported."""
    device = await _get_device_or_404(registry, device_id)
    operation = await registry.record_power_operation(PowerOperationRecord(
        device_id=device.id,
        operation=PowerOperationType.SHUTDOWN,
        requested_by="api",
    ))

    done = await sender.request_shutdown(device.ip_address)
    operation.result = PowerOperationResult.SUCCESS if done else PowerOperationResult.NOT_SUPPORTED
    operation.result_message = "Shutdown requested" if done else "Remote shutdown is not supported"
    operation.completed_at = utcnow()
    await registry.record_power_operation(operation)

    return PowerOperationResponse(
        success=done,
        message=operation.result_message,
        device_id=device.id,
        operation_id=operation.id,
    )


@router.post("/wake", response_model=PowerOperationResponse)
async def wake_address(body: WakeRequest, sender: WakeSender = Depends(get_sender)):
    """Send a magic packet to an arbitrary MAC address."""
    sent = await sender.send_wake(body.mac_address, body.ip_address)
    return PowerOperationResponse(
        success=sent,
        message=f"Magic packet sent to {body.mac_address}" if sent
        else f"Failed to send magic packet to {body.mac_address}",
    )


@router.get("/devices/{device_id}/children", response_model=list[RelationResponse])
async def get_device_children(device_id: int, registry: DeviceRegistry = Depends(get_registry)):
    await _get_device_or_404(registry, device_id)
    return [RelationResponse.model_validate(r) for r in await registry.children_of(device_id)]


@router.get("/devices/{device_id}/parents", response_model=list[RelationResponse])
async def get_device_parents(device_id: int, registry: DeviceRegistry = Depends(get_registry)):
    await _get_device_or_404(registry, device_id)
    return [RelationResponse.model_validate(r) for r in await registry.parents_of(device_id)]


@router.post("/device-relations", response_model=RelationResponse, status_code=201)
async def create_relation(body: RelationCreate, registry: DeviceRegistry = Depends(get_registry)):
    """Link a parent device to a child device."""
    if body.parent_device_id == body.child_device_id:
        raise HTTPException(status_code=400, detail="A device cannot be related to itself")
    await _get_device_or_404(registry, body.parent_device_id)
    await _get_device_or_404(registry, body.child_device_id)
    try:
        relation = await registry.add_relation(DeviceRelationRecord(
            parent_device_id=body.parent_device_id,
            child_device_id=body.child_device_id,
            relation_type=body.relation_type,
            description=body.description,
        ))
    except PersistenceConflict:
        raise HTTPException(status_code=409, detail="Relation already exists")
    logger.info(f"Relation {relation.relation_type.value}: {relation.parent_device_id} -> {relation.child_device_id}")
    return RelationResponse.model_validate(relation)


@router.put("/device-relations/{relation_id}", response_model=RelationResponse)
async def update_relation(relation_id: int, body: RelationUpdate,
                          registry: DeviceRegistry = Depends(get_registry)):
    try:
        relation = await registry.update_relation(relation_id, body.relation_type, body.description)
    except PersistenceConflict:
        raise HTTPException(status_code=409, detail="Relation already exists")
    if relation is None:
        raise HTTPException(status_code=404, detail="Relation not found")
    return RelationResponse.model_validate(relation)


@router.delete("/device-relations/{relation_id}", status_code=204)
async def delete_relation(relation_id: int, registry: DeviceRegistry = Depends(get_registry)):
    if not await registry.delete_relation(relation_id):
        raise HTTPException(status_code=404, detail="Relation not found")


# Magic packet captures

@router.get("/magic-packets", response_model=CaptureListResponse)
async def get_magic_packets(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    since: Optional[datetime] = Query(None),
    registry: DeviceRegistry = Depends(get_registry),
):
    """Get captured magic packets, newest first."""
    total, captures = await registry.list_captures(since=since, page=page, page_size=page_size)
    return CaptureListResponse(
        captures=[CaptureResponse.model_validate(c) for c in captures],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/magic-packets/stats", response_model=CaptureStats)
async def get_magic_packet_stats(
    registry: DeviceRegistry = Depends(get_registry),
    listener: Optional[MagicPacketListener] = Depends(get_listener),
):
    stats = await registry.capture_stats()
    last = stats.pop("last_capture")
    return CaptureStats(
        **stats,
        last_capture=CaptureResponse.model_validate(last) if last else None,
        listener_running=bool(listener and listener.running),
        monitored_ports=sorted(listener.bound_ports) if listener else [],
        dropped_datagrams=listener.dropped_datagrams if listener else 0,
    )


@router.get("/magic-packets/recent", response_model=list[CaptureResponse])
async def get_recent_magic_packets(
    count: int = Query(10, ge=1, le=100),
    registry: DeviceRegistry = Depends(get_registry),
):
    return [CaptureResponse.model_validate(c) for c in await registry.recent_captures(count)]


@router.delete("/magic-packets/cleanup", response_model=CleanupResponse)
async def cleanup_magic_packets(
    days_to_keep: int = Query(30, ge=1),
    registry: DeviceRegistry = Depends(get_registry),
):
    """Delete captures older than ``days_to_keep`` days."""
    deleted = await registry.delete_captures_before(utcnow() - timedelta(days=days_to_keep))
    logger.info(f"Deleted {deleted} magic packet captures older than {days_to_keep} days")
    return CleanupResponse(
        success=True,
        deleted=deleted,
        message=f"Deleted {deleted} captures older than {days_to_keep} days",
    )


# MAC vendors

@router.get("/mac-vendors", response_model=list[VendorMappingResponse])
async def list_vendor_mappings(vendors: MacVendorDirectory = Depends(get_vendors)):
    """Every prefix-to-vendor mapping currently loaded."""
    return [VendorMappingResponse.model_validate(e) for e in vendors.all_mappings()]


@router.get("/mac-vendors/lookup/{mac_address}", response_model=VendorLookupResponse)
async def lookup_vendor(mac_address: str, vendors: MacVendorDirectory = Depends(get_vendors)):
    vendor = vendors.lookup(mac_address)
    return VendorLookupResponse(mac_address=mac_address, vendor=vendor, found=vendor != UNKNOWN_VENDOR)


@router.get("/mac-vendors/search", response_model=list[VendorMappingResponse])
async def search_vendors(
    name: str = Query(..., min_length=1),
    vendors: MacVendorDirectory = Depends(get_vendors),
):
    return [VendorMappingResponse.model_validate(e) for e in vendors.search_by_vendor_name(name)]


@router.get("/mac-vendors/stats", response_model=VendorStats)
async def vendor_stats(vendors: MacVendorDirectory = Depends(get_vendors)):
    return VendorStats(
        is_loaded=vendors.is_loaded,
        total_mappings=vendors.count,
        total_vendors=len(vendors.all_vendor_names()),
    )
