from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Enum, UniqueConstraint
from datetime import datetime, timezone
from .database import Base
from .records import DeviceStatus, DeviceType, RelationType, PowerOperationType, PowerOperationResult


def _utcnow():
    return datetime.now(timezone.utc)


def _enum(enum_cls, length: int):
    # Store the enum value ("Online"), not the member name ("ONLINE")
    return Enum(enum_cls, values_callable=lambda e: [m.value for m in e],
                native_enum=False, length=length, validate_strings=True)


class Device(Base):
    """Registry device. MAC and IP are each unique across all devices."""

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, default="")
    ip_address = Column(String(45), unique=True, index=True, nullable=False)
    mac_address = Column(String(17), unique=True, index=True, nullable=False)  # AA:BB:CC:DD:EE:FF
    device_type = Column(_enum(DeviceType, 20), nullable=False, default=DeviceType.UNKNOWN)
    status = Column(_enum(DeviceStatus, 20), nullable=False, default=DeviceStatus.UNKNOWN, index=True)
    manufacturer = Column(String(100))
    description = Column(String(500))
    wake_on_lan_enabled = Column(Boolean, default=False, nullable=False)

    # Timestamps
    last_seen_at = Column(DateTime(timezone=True), default=_utcnow)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Device(mac={self.mac_address}, ip={self.ip_address}, name={self.name})>"


class MagicPacketCapture(Base):
    """Append-only log of received magic packet candidates."""

    __tablename__ = "magic_packet_captures"

    id = Column(Integer, primary_key=True, index=True)
    target_mac_address = Column(String(17), nullable=False, index=True)
    source_ip_address = Column(String(45), nullable=False)
    captured_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    packet_size_bytes = Column(Integer, nullable=False)
    is_valid = Column(Boolean, nullable=False)
    # Plain column, no FK: captures must outlive an administratively deleted device
    matched_device_id = Column(Integer, index=True)
    matched_device_name = Column(String(100))
    notes = Column(String(200))

    def __repr__(self):
        return f"<MagicPacketCapture(mac={self.target_mac_address}, src={self.source_ip_address}, valid={self.is_valid})>"


class DeviceRelation(Base):
    """Parent/child device edge."""

    __tablename__ = "device_relations"
    __table_args__ = (UniqueConstraint("parent_device_id", "child_device_id", "relation_type"),)

    id = Column(Integer, primary_key=True, index=True)
    parent_device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    child_device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    relation_type = Column(_enum(RelationType, 30), nullable=False, default=RelationType.UNKNOWN)
    description = Column(String(200))
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class PowerOperation(Base):
    """Audit trail of wake/shutdown requests."""

    __tablename__ = "power_operations"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    operation = Column(_enum(PowerOperationType, 20), nullable=False)
    result = Column(_enum(PowerOperationResult, 20), nullable=False, default=PowerOperationResult.PENDING)
    result_message = Column(String(500))
    requested_by = Column(String(100))
    requested_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True))
