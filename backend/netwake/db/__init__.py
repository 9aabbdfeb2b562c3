# Database module
from .database import engine, AsyncSessionLocal, init_db
from .models import Device, MagicPacketCapture, DeviceRelation, PowerOperation, Base
from .registry import DeviceRegistry

__all__ = [
    "engine", "AsyncSessionLocal", "init_db",
    "Device", "MagicPacketCapture", "DeviceRelation", "PowerOperation", "Base",
    "DeviceRegistry",
]
