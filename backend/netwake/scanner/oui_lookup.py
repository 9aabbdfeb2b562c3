"""
OUI (Organizationally Unique Identifier) lookup for MAC address vendor identification.

The vendor table is an immutable snapshot. ``load`` builds a complete new
snapshot and swaps the reference in one assignment, so concurrent readers
see either the old table or the new one, never a half-built one.

Matching is longest-prefix: among all prefixes the normalized address
starts with, the longest one wins. Prefixes keep their feed length
(``00:00:0C``, ``00:1B:C5:0``, ``70:B3:D5:12:3``), they are not cut to a
fixed width.
"""

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

UNKNOWN_VENDOR = "Unknown"
VENDOR_NAMESPACE = "http://www.cisco.com/server/spt"


@dataclass(frozen=True)
class MacVendorEntry:
    """One prefix -> vendor mapping from the feed."""
    mac_prefix: str
    vendor_name: str


@dataclass(frozen=True)
class _VendorSnapshot:
    entries: Tuple[MacVendorEntry, ...]
    by_prefix: Mapping[str, str]
    prefix_lengths: Tuple[int, ...]  # distinct, longest first


_EMPTY = _VendorSnapshot(entries=(), by_prefix=MappingProxyType({}), prefix_lengths=())


def _normalize_address(mac: str) -> str:
    """Uppercase, dashes to colons."""
    return mac.strip().replace("-", ":").upper()


def _parse_xml(path: Path) -> List[MacVendorEntry]:
    # <VendorMapping mac_prefix="00:00:0C" vendor_name="Cisco Systems, Inc"/>
    tree = ET.parse(path)
    entries = []
    for element in tree.getroot().iter():
        tag = element.tag.split("}", 1)[-1]
        if tag != "VendorMapping":
            continue
        prefix = (element.get("mac_prefix") or "").strip()
        if prefix:
            entries.append(MacVendorEntry(prefix, (element.get("vendor_name") or "").strip()))
    return entries


def _parse_json(path: Path) -> List[MacVendorEntry]:
    # [{"macPrefix":"00:00:0C","vendorName":"Cisco Systems, Inc",...}, ...]
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    entries = []
    for item in data:
        prefix = (item.get("macPrefix") or "").strip()
        if prefix:
            entries.append(MacVendorEntry(prefix, (item.get("vendorName") or "").strip()))
    return entries


def build_snapshot(entries: List[MacVendorEntry]) -> _VendorSnapshot:
    by_prefix: Dict[str, str] = {}
    kept = []
    for entry in entries:
        key = _normalize_address(entry.mac_prefix)
        # First occurrence of a prefix wins
        if key in by_prefix:
            continue
        by_prefix[key] = entry.vendor_name
        kept.append(MacVendorEntry(key, entry.vendor_name))
    lengths = tuple(sorted({len(k) for k in by_prefix}, reverse=True))
    return _VendorSnapshot(
        entries=tuple(kept),
        by_prefix=MappingProxyType(by_prefix),
        prefix_lengths=lengths,
    )


class MacVendorDirectory:
    """In-memory MAC prefix -> vendor name directory."""

    def __init__(self, entries: Optional[List[MacVendorEntry]] = None):
        self._snapshot = build_snapshot(entries) if entries else _EMPTY

    def load(self, source: Union[str, Path]) -> int:
        """
        Load (or reload) the vendor feed from an XML or JSON file.

        Returns the number of mappings now loaded. On a missing or broken
        file the current table is kept and 0 is returned.
        """
        path = Path(source)
        if not path.exists():
            logger.error(f"Vendor MAC feed not found: {path}")
            return 0

        logger.info(f"Loading MAC vendor mappings from {path}")
        try:
            if path.suffix.lower() == ".json":
                entries = _parse_json(path)
            else:
                entries = _parse_xml(path)
        except (ET.ParseError, json.JSONDecodeError, OSError, AttributeError) as e:
            logger.error(f"Failed to parse vendor MAC feed {path}: {e}")
            return 0

        self._snapshot = build_snapshot(entries)
        logger.info(f"Loaded {self.count} MAC vendor mappings")
        return self.count

    def lookup(self, mac_address: Optional[str]) -> str:
        """
        Look up the vendor for a MAC address or prefix.

        Args:
            mac_address: e.g. "00:00:0C:12:34:56", "00-00-0c-12-34-56" or "00:00:0C"

        Returns:
            Vendor name of the longest matching prefix, or "Unknown"
        """
        if not mac_address or not mac_address.strip():
            return UNKNOWN_VENDOR

        snapshot = self._snapshot
        normalized = _normalize_address(mac_address)
        for length in snapshot.prefix_lengths:
            if length > len(normalized):
                continue
            vendor = snapshot.by_prefix.get(normalized[:length])
            if vendor is not None:
                return vendor
        return UNKNOWN_VENDOR

    def search_by_vendor_name(self, vendor_name_part: Optional[str]) -> List[MacVendorEntry]:
        """Case-insensitive substring search over vendor names."""
        if not vendor_name_part or not vendor_name_part.strip():
            return []
        needle = vendor_name_part.casefold()
        return [e for e in self._snapshot.entries if needle in e.vendor_name.casefold()]

    def all_vendor_names(self) -> List[str]:
        return sorted({e.vendor_name for e in self._snapshot.entries})

    def all_mappings(self) -> Tuple[MacVendorEntry, ...]:
        return self._snapshot.entries

    @property
    def count(self) -> int:
        return len(self._snapshot.entries)

    @property
    def is_loaded(self) -> bool:
        return self.count > 0


# Process-wide directory, loaded by the application lifespan
vendor_directory = MacVendorDirectory()
