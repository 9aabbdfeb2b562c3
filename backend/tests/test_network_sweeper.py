"""Tests for range parsing, ARP parsing and the sweep itself."""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from netwake.core.errors import TransientNetworkError
from netwake.db.records import DeviceStatus, DeviceType
from netwake.scanner.device_classifier import DeviceClassifier
from netwake.scanner.network_sweeper import (
    NetworkSweeper,
    network_prefix,
    parse_arp_output,
    parse_network_range,
)


class TestParseNetworkRange:
    """Range expansion"""

    def test_explicit_range_is_inclusive(self):
        assert parse_network_range("192.168.1.10-12") == ["192.168.1.10", "192.168.1.11", "192.168.1.12"]

    def test_three_octets_expand_to_full_subnet(self):
        addresses = parse_network_range("10.0.0")
        assert len(addresses) == 254
        assert addresses[0] == "10.0.0.1"
        assert addresses[-1] == "10.0.0.254"

    def test_four_octets_expand_to_full_subnet(self):
        assert len(parse_network_range("10.0.0.0")) == 254

    @pytest.mark.parametrize("text", ["", None, "garbage", "192.168.1.20-10", "192.168.300.1-5", "1.2-3"])
    def test_malformed_is_empty(self, text):
        assert parse_network_range(text) == []

    def test_network_prefix(self):
        assert network_prefix("192.168.5.77") == "192.168.5"
        assert network_prefix("fe80::1") is None


class TestParseArpOutput:
    """ARP table parsing"""

    def test_linux_output(self):
        output = (
            "Address                  HWtype  HWaddress           Flags Mask            Iface\n"
            "192.168.1.1              ether   aa:bb:cc:dd:ee:01   C                     eth0\n"
            "192.168.1.10             ether   aa:bb:cc:dd:ee:10   C                     eth0\n"
        )
        assert parse_arp_output(output, "192.168.1.1") == "AA:BB:CC:DD:EE:01"
        assert parse_arp_output(output, "192.168.1.10") == "AA:BB:CC:DD:EE:10"

    def test_windows_output(self):
        output = "  192.168.1.5           00-1b-21-aa-bb-cc     dynamic\n"
        assert parse_arp_output(output, "192.168.1.5") == "00:1B:21:AA:BB:CC"

    def test_macos_short_octets(self):
        output = "? (192.168.1.7) at 0:1b:21:a:bb:cc on en0 ifscope [ethernet]\n"
        assert parse_arp_output(output, "192.168.1.7") == "00:1B:21:0A:BB:CC"

    def test_incomplete_and_broadcast_skipped(self):
        output = (
            "192.168.1.8  (incomplete)  eth0\n"
            "192.168.1.255  ether  ff:ff:ff:ff:ff:ff  C  eth0\n"
        )
        assert parse_arp_output(output, "192.168.1.8") is None
        assert parse_arp_output(output, "192.168.1.255") is None

    def test_missing_entry(self):
        assert parse_arp_output("", "192.168.1.1") is None


class TestNetworkSweeper:
    """Sweep behaviour with network primitives mocked"""

    @pytest.fixture
    def sweeper(self):
        classifier = DeviceClassifier()
        classifier.probe_open_ports = AsyncMock(return_value=[])
        return NetworkSweeper(classifier=classifier)

    @pytest.mark.asyncio
    async def test_discover_keeps_live_hosts_with_mac(self, sweeper):
        """Hosts that do not answer, or answer without an ARP entry, are dropped"""
        alive = {"192.168.1.1", "192.168.1.2"}
        macs = {"192.168.1.1": "00:0C:29:00:00:01"}

        with patch.object(sweeper, "ping", new=AsyncMock(side_effect=lambda ip, timeout=None: ip in alive)), \
             patch.object(sweeper, "get_mac_address", new=AsyncMock(side_effect=lambda ip: macs.get(ip))), \
             patch.object(sweeper, "get_hostname", new=AsyncMock(return_value=None)):
            hosts = await sweeper.discover("192.168.1.1-5")

        assert len(hosts) == 1
        host = hosts[0]
        assert host.ip_address == "192.168.1.1"
        assert host.mac_address == "00:0C:29:00:00:01"
        assert host.status == DeviceStatus.ONLINE
        assert host.device_type == DeviceType.COMPUTER
        assert host.name == "192.168.1.1"

    @pytest.mark.asyncio
    async def test_discover_malformed_range(self, sweeper):
        with patch.object(sweeper, "ping", new=AsyncMock()) as ping:
            assert await sweeper.discover("nope") == []
        ping.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_limiter_bounds_concurrency(self, sweeper):
        """No more probes run at once than the limiter allows"""
        in_flight = 0
        peak = 0

        async def slow_ping(ip, timeout=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return False

        with patch.object(sweeper, "ping", new=slow_ping):
            await sweeper.discover("10.0.0.1-40", limiter=asyncio.Semaphore(5))

        assert 0 < peak <= 5

    @pytest.mark.asyncio
    async def test_hostname_used_as_name(self, sweeper):
        with patch.object(sweeper, "ping", new=AsyncMock(return_value=True)), \
             patch.object(sweeper, "get_mac_address", new=AsyncMock(return_value="AA:BB:CC:DD:EE:01")), \
             patch.object(sweeper, "get_hostname", new=AsyncMock(return_value="nas.lan")):
            hosts = await sweeper.discover("10.0.0.3-3")
        assert hosts[0].name == "nas.lan"

    @pytest.mark.asyncio
    async def test_ping_missing_binary_is_false(self, sweeper):
        """A missing ping executable reads as unreachable"""
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=FileNotFoundError())):
            assert await sweeper.ping("10.0.0.1") is False

    @pytest.mark.asyncio
    async def test_ping_passes_whole_seconds(self, sweeper):
        """A sub-second timeout still gives ping an integer -W"""
        process = AsyncMock()
        process.returncode = 0
        with patch("netwake.scanner.network_sweeper.IS_WINDOWS", False), \
             patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=process)) as spawn:
            assert await sweeper.ping("10.0.0.1", timeout=0.4) is True
        args = spawn.await_args.args
        assert args[args.index("-W") + 1] == "1"


class TestMacResolution:
    """ARP probe first, ARP table as fallback"""

    @pytest.fixture
    def sweeper(self):
        return NetworkSweeper(arp_timeout=0.1)

    @pytest.mark.asyncio
    async def test_arp_reply_wins(self, sweeper):
        with patch.object(sweeper, "_arp_probe", return_value="AA:BB:CC:DD:EE:01"), \
             patch.object(sweeper, "_query_arp_table", new=AsyncMock()) as table:
            assert await sweeper.get_mac_address("10.0.0.1") == "AA:BB:CC:DD:EE:01"
        table.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_arp_request_unavailable_falls_back_to_table(self, sweeper):
        """Without raw socket rights the ARP table still resolves the MAC"""
        with patch("netwake.scanner.network_sweeper.srp", side_effect=PermissionError("Operation not permitted")), \
             patch.object(sweeper, "_query_arp_table", new=AsyncMock(return_value="AA:BB:CC:DD:EE:02")):
            assert await sweeper.get_mac_address("10.0.0.2") == "AA:BB:CC:DD:EE:02"

    @pytest.mark.asyncio
    async def test_no_arp_reply_falls_back_to_table(self, sweeper):
        with patch("netwake.scanner.network_sweeper.srp", return_value=([], [])), \
             patch.object(sweeper, "_query_arp_table", new=AsyncMock(return_value=None)) as table:
            assert await sweeper.get_mac_address("10.0.0.3") is None
        table.assert_awaited_once_with("10.0.0.3")

    def test_arp_reply_normalized(self, sweeper):
        reply = MagicMock(hwsrc="aa:bb:cc:dd:ee:04")
        with patch("netwake.scanner.network_sweeper.srp", return_value=([(MagicMock(), reply)], [])):
            assert sweeper._arp_probe("10.0.0.4") == "AA:BB:CC:DD:EE:04"

    def test_arp_request_error_is_transient(self, sweeper):
        with patch("netwake.scanner.network_sweeper.srp", side_effect=PermissionError("Operation not permitted")):
            with pytest.raises(TransientNetworkError):
                sweeper._arp_probe("10.0.0.5")

    @pytest.mark.asyncio
    async def test_arp_request_disabled(self):
        sweeper = NetworkSweeper(arp_probe=False)
        with patch.object(sweeper, "_arp_probe") as probe, \
             patch.object(sweeper, "_query_arp_table", new=AsyncMock(return_value="AA:BB:CC:DD:EE:06")):
            assert await sweeper.get_mac_address("10.0.0.6") == "AA:BB:CC:DD:EE:06"
        probe.assert_not_called()
