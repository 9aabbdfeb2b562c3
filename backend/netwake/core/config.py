from pydantic_settings import BaseSettings
from functools import lru_cache
from pathlib import Path


BUNDLED_VENDOR_FEED = Path(__file__).resolve().parent.parent / "scanner" / "vendor_macs.xml"


class Settings(BaseSettings):
    """Application settings."""

    # Application
    APP_NAME: str = "NetWake"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./netwake.db"

    # Discovery loop
    DISCOVERY_ENABLED: bool = True
    DISCOVERY_INTERVAL_MINUTES: float = 30
    DISCOVERY_ERROR_BACKOFF_MINUTES: float = 5
    OFFLINE_THRESHOLD_MINUTES: float = 60  # Online devices silent this long are demoted
    DEFAULT_NETWORK_RANGES: list[str] = ["192.168.1.1-254", "192.168.0.1-254"]

    # Probing
    SWEEP_CONCURRENCY: int = 20
    PING_TIMEOUT: float = 3.0  # seconds
    REFRESH_PING_TIMEOUT: float = 0.4  # seconds, lighter status refresh path
    PORT_PROBE_TIMEOUT: float = 1.0  # seconds per TCP connect
    ARP_TIMEOUT: float = 2.0  # seconds for the ARP probe and table query
    ARP_PROBE_ENABLED: bool = True  # raw ARP request via scapy before the ARP table

    # Magic packet listener
    LISTENER_ENABLED: bool = True
    MAGIC_PACKET_PORTS: list[int] = [7, 9]
    LISTENER_WORKERS: int = 16
    LISTENER_QUEUE_SIZE: int = 1024
    LISTENER_ERROR_DELAY: float = 1.0  # seconds

    # Wake-on-LAN sender
    WOL_BROADCAST_ADDRESS: str = "255.255.255.255"
    WOL_PORT: int = 9

    # MAC vendor feed
    VENDOR_FEED_PATH: Path = BUNDLED_VENDOR_FEED

    # CORS
    CORS_ORIGINS: list[str] = ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
