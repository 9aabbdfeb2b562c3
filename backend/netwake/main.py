from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from .core.config import settings
from .core.errors import ListenerBindError
from .db.database import init_db
from .db.registry import DeviceRegistry
from .api.routes import router as api_router
from .scanner.device_classifier import DeviceClassifier
from .scanner.network_sweeper import NetworkSweeper
from .scanner.oui_lookup import vendor_directory
from .scanner.reconciler import DiscoveryReconciler
from .wol.listener import MagicPacketListener
from .wol.sender import WakeSender

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

registry = DeviceRegistry()
sweeper = NetworkSweeper(
    classifier=DeviceClassifier(port_timeout=settings.PORT_PROBE_TIMEOUT),
    ping_timeout=settings.PING_TIMEOUT,
    arp_timeout=settings.ARP_TIMEOUT,
    arp_probe=settings.ARP_PROBE_ENABLED,
)
reconciler = DiscoveryReconciler(
    registry,
    sweeper,
    interval=settings.DISCOVERY_INTERVAL_MINUTES * 60,
    error_backoff=settings.DISCOVERY_ERROR_BACKOFF_MINUTES * 60,
    offline_threshold=settings.OFFLINE_THRESHOLD_MINUTES * 60,
    default_ranges=settings.DEFAULT_NETWORK_RANGES,
    concurrency=settings.SWEEP_CONCURRENCY,
    refresh_ping_timeout=settings.REFRESH_PING_TIMEOUT,
)
listener = MagicPacketListener(
    registry,
    ports=settings.MAGIC_PACKET_PORTS,
    workers=settings.LISTENER_WORKERS,
    queue_size=settings.LISTENER_QUEUE_SIZE,
    error_delay=settings.LISTENER_ERROR_DELAY,
)
sender = WakeSender(broadcast_address=settings.WOL_BROADCAST_ADDRESS, port=settings.WOL_PORT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()
    logger.info("Database initialized")

    vendor_directory.load(settings.VENDOR_FEED_PATH)

    app.state.registry = registry
    app.state.reconciler = reconciler
    app.state.sender = sender
    app.state.vendors = vendor_directory
    app.state.listener = listener

    if settings.DISCOVERY_ENABLED:
        await reconciler.start()

    if settings.LISTENER_ENABLED:
        try:
            await listener.start()
        except ListenerBindError as e:
            logger.error(f"Magic packet monitoring unavailable: {e}")

    yield

    logger.info("Shutting down")
    await listener.stop()
    await reconciler.stop()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Network discovery and Wake-on-LAN service",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api", tags=["API"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "discovery_running": reconciler.running,
        "listener_running": listener.running,
        "vendor_mappings": vendor_directory.count,
    }
