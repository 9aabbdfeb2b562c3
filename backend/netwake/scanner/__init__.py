# Scanner module
from .device_classifier import DeviceClassifier
from .network_sweeper import DiscoveredHost, NetworkSweeper, parse_network_range
from .oui_lookup import MacVendorDirectory, vendor_directory
from .reconciler import DiscoveryReconciler, ReconcileSummary, RegistryMerge

__all__ = [
    "DeviceClassifier", "DiscoveredHost", "NetworkSweeper", "parse_network_range",
    "MacVendorDirectory", "vendor_directory",
    "DiscoveryReconciler", "ReconcileSummary", "RegistryMerge",
]
