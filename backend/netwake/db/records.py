"""
Flat data-transfer records exchanged between the engine and the registry.

These carry no back-references: a capture names its device by id, and
parent/child device links are a separate edge list.
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceStatus(str, enum.Enum):
    UNKNOWN = "Unknown"
    ONLINE = "Online"
    OFFLINE = "Offline"
    MAINTENANCE = "Maintenance"
    ERROR = "Error"


class DeviceType(str, enum.Enum):
    UNKNOWN = "Unknown"
    COMPUTER = "Computer"
    SERVER = "Server"
    ROUTER = "Router"
    SWITCH = "Switch"
    PRINTER = "Printer"
    PHONE = "Phone"
    TABLET = "Tablet"
    IOT = "IoT"
    CAMERA = "Camera"
    ACCESS_POINT = "AccessPoint"


class RelationType(str, enum.Enum):
    UNKNOWN = "Unknown"
    PHYSICAL_TO_VIRTUAL = "PhysicalToVirtual"
    NETWORK_SWITCH = "NetworkSwitch"
    POWER_DEPENDENCY = "PowerDependency"
    SERVICE_DEPENDENCY = "ServiceDependency"


class PowerOperationType(str, enum.Enum):
    WAKE_ON_LAN = "WakeOnLan"
    SHUTDOWN = "Shutdown"


class PowerOperationResult(str, enum.Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    TIMEOUT = "Timeout"
    NOT_SUPPORTED = "NotSupported"


@dataclass
class DeviceRecord:
    """A registry device. ``id`` is None until first persisted."""
    name: str
    ip_address: str
    mac_address: str
    device_type: DeviceType = DeviceType.UNKNOWN
    status: DeviceStatus = DeviceStatus.UNKNOWN
    last_seen_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    wake_on_lan_enabled: bool = False
    manufacturer: Optional[str] = None
    description: Optional[str] = None
    id: Optional[int] = None

    def copy(self) -> "DeviceRecord":
        return replace(self)


@dataclass(frozen=True)
class CaptureRecord:
    """One received datagram that looked like a magic packet. Immutable."""
    target_mac_address: str
    source_ip_address: str
    captured_at: datetime
    packet_size_bytes: int
    is_valid: bool
    matched_device_id: Optional[int] = None
    matched_device_name: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class DeviceRelationRecord:
    parent_device_id: int
    child_device_id: int
    relation_type: RelationType = RelationType.UNKNOWN
    description: Optional[str] = None
    id: Optional[int] = None


@dataclass
class PowerOperationRecord:
    device_id: int
    operation: PowerOperationType
    result: PowerOperationResult = PowerOperationResult.PENDING
    result_message: Optional[str] = None
    requested_by: Optional[str] = None
    requested_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    id: Optional[int] = None
