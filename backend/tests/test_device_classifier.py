"""Tests for device type classification."""

import pytest
from unittest.mock import AsyncMock, patch

from netwake.db.records import DeviceType
from netwake.scanner.device_classifier import (
    DeviceClassifier,
    classify_by_hostname,
    classify_by_mac,
    classify_by_ports,
)


class TestClassifyByMac:
    """MAC prefix tables"""

    def test_six_digit_prefix(self):
        assert classify_by_mac("00:0C:29:12:34:56") == DeviceType.COMPUTER
        assert classify_by_mac("b8-27-eb-00-11-22") == DeviceType.IOT

    def test_eight_digit_prefix(self):
        """MA-M blocks are told apart by 8 digits"""
        assert classify_by_mac("8C:1F:64:0A:00:01") == DeviceType.CAMERA

    def test_unknown_prefix(self):
        assert classify_by_mac("AA:BB:CC:DD:EE:FF") == DeviceType.UNKNOWN

    def test_malformed(self):
        assert classify_by_mac("not-a-mac") == DeviceType.UNKNOWN
        assert classify_by_mac(None) == DeviceType.UNKNOWN


class TestClassifyByHostname:
    """Hostname tokens"""

    @pytest.mark.parametrize("hostname,expected", [
        ("main-gateway.lan", DeviceType.ROUTER),
        ("Office-Printer", DeviceType.PRINTER),
        ("backup-server", DeviceType.SERVER),
        ("frontdoor-cam", DeviceType.CAMERA),
        ("kids-ipad", DeviceType.TABLET),
        ("dev-laptop", DeviceType.COMPUTER),
        ("thing", DeviceType.UNKNOWN),
    ])
    def test_tokens(self, hostname, expected):
        assert classify_by_hostname(hostname) == expected

    def test_no_hostname(self):
        assert classify_by_hostname(None) == DeviceType.UNKNOWN


class TestClassifyByPorts:
    """Open port fingerprints"""

    def test_router(self):
        assert classify_by_ports([22, 80]) == DeviceType.ROUTER

    def test_printer(self):
        assert classify_by_ports([443, 9100]) == DeviceType.PRINTER

    def test_camera(self):
        assert classify_by_ports([80, 554]) == DeviceType.CAMERA

    def test_remote_desktop(self):
        assert classify_by_ports([3389]) == DeviceType.COMPUTER

    def test_database_server(self):
        assert classify_by_ports([22, 5432]) == DeviceType.SERVER

    def test_nothing_open(self):
        assert classify_by_ports([]) == DeviceType.UNKNOWN


class TestDeviceClassifier:
    """Resolution order and failure handling"""

    @pytest.mark.asyncio
    async def test_mac_wins_without_probing(self):
        """A MAC match short-circuits the port probe"""
        classifier = DeviceClassifier()
        with patch.object(classifier, "probe_open_ports", new=AsyncMock(return_value=[80, 554])) as probe:
            result = await classifier.classify("10.0.0.5", "00:0C:29:00:00:01", "cam-1")
        assert result == DeviceType.COMPUTER
        probe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hostname_before_ports(self):
        classifier = DeviceClassifier()
        with patch.object(classifier, "probe_open_ports", new=AsyncMock(return_value=[3389])) as probe:
            result = await classifier.classify("10.0.0.5", "AA:BB:CC:DD:EE:FF", "hall-printer")
        assert result == DeviceType.PRINTER
        probe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_to_ports(self):
        classifier = DeviceClassifier()
        with patch.object(classifier, "probe_open_ports", new=AsyncMock(return_value=[22, 80])):
            result = await classifier.classify("10.0.0.5", "AA:BB:CC:DD:EE:FF", None)
        assert result == DeviceType.ROUTER

    @pytest.mark.asyncio
    async def test_probe_failure_is_unknown(self):
        """Classification never raises"""
        classifier = DeviceClassifier()
        with patch.object(classifier, "probe_open_ports", new=AsyncMock(side_effect=RuntimeError("boom"))):
            result = await classifier.classify("10.0.0.5", "AA:BB:CC:DD:EE:FF", None)
        assert result == DeviceType.UNKNOWN

    @pytest.mark.asyncio
    async def test_probe_open_ports_against_local_server(self):
        """A listening loopback port is reported open"""
        import asyncio

        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            classifier = DeviceClassifier(port_timeout=1.0, ports=[port])
            assert await classifier.probe_open_ports("127.0.0.1") == [port]
        finally:
            server.close()
            await server.wait_closed()
