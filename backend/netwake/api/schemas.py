from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional

from ..db.records import DeviceStatus, DeviceType, RelationType


class DeviceResponse(BaseModel):
    """Device response schema."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    ip_address: str
    mac_address: str
    device_type: DeviceType
    status: DeviceStatus
    wake_on_lan_enabled: bool
    manufacturer: Optional[str] = None
    description: Optional[str] = None
    last_seen_at: datetime
    created_at: datetime
    updated_at: datetime


class DeviceListResponse(BaseModel):
    """Device list response with pagination."""
    devices: list[DeviceResponse]
    total: int
    skip: int
    limit: int


class DiscoverRequest(BaseModel):
    network_range: str = Field(..., examples=["192.168.1.1-254"])


class DiscoverResponse(BaseModel):
    """Outcome of an on-demand range discovery."""
    success: bool
    message: str
    network_range: str
    discovered: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0


class RefreshRequest(BaseModel):
    device_ids: Optional[list[int]] = None


class RefreshResponse(BaseModel):
    success: bool
    checked: int
    online: int


class WakeRequest(BaseModel):
    """Raw wake request for a MAC that may not be registered."""
    mac_address: str
    ip_address: Optional[str] = None


class PowerOperationResponse(BaseModel):
    """Result of a wake or shutdown request."""
    success: bool
    message: str
    device_id: Optional[int] = None
    operation_id: Optional[int] = None


class CaptureResponse(BaseModel):
    """Magic packet capture schema."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    target_mac_address: str
    source_ip_address: str
    captured_at: datetime
    packet_size_bytes: int
    is_valid: bool
    matched_device_id: Optional[int] = None
    matched_device_name: Optional[str] = None
    notes: Optional[str] = None


class CaptureListResponse(BaseModel):
    captures: list[CaptureResponse]
    total: int
    page: int
    page_size: int


class CaptureStats(BaseModel):
    """Magic packet statistics schema."""
    total_captures: int
    today_captures: int
    valid_captures: int
    matched_captures: int
    last_capture: Optional[CaptureResponse] = None
    listener_running: bool
    monitored_ports: list[int]
    dropped_datagrams: int


class CleanupResponse(BaseModel):
    success: bool
    deleted: int
    message: str


class VendorLookupResponse(BaseModel):
    mac_address: str
    vendor: str
    found: bool


class VendorMappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    mac_prefix: str
    vendor_name: str


class VendorStats(BaseModel):
    is_loaded: bool
    total_mappings: int
    total_vendors: int


class RelationResponse(BaseModel):
    """Device relation edge schema."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    parent_device_id: int
    child_device_id: int
    relation_type: RelationType
    description: Optional[str] = None


class RelationCreate(BaseModel):
    parent_device_id: int
    child_device_id: int
    relation_type: RelationType = RelationType.UNKNOWN
    description: Optional[str] = Field(None, max_length=200)


class RelationUpdate(BaseModel):
    relation_type: RelationType
    description: Optional[str] = Field(None, max_length=200)
