"""Tests for the built-in checks (OS calls mocked)."""

from __future__ import annotations

import socket
from collections import namedtuple
from unittest.mock import patch

import httpx
import pytest

from hostdiag.checks import common, eventlog, network, security, system
from hostdiag.config import Settings
from hostdiag.scan.models import Tier
from hostdiag.scan.query import QueryAccessDenied, QueryNotFound, ResilientQuery
from hostdiag.scan.registry import CheckContext, CheckUnavailable
from hostdiag.shell import CommandResult

DiskUsage = namedtuple("DiskUsage", "total used free")
_GB = 1024 ** 3


def _ctx(check_id: str = "x", settings: Settings | None = None, query=None) -> CheckContext:
    return CheckContext(
        check_id=check_id,
        tier=Tier.DEEP,
        category="Test",
        settings=settings or Settings(_env_file=None),
        query_wrapper=query,
    )


# ── PowerShell helper ────────────────────────────────────────────────────────


class TestPowershellJson:
    @patch("hostdiag.checks.common.run_command")
    def test_decodes_json(self, mock_run) -> None:
        mock_run.return_value = CommandResult(0, '{"Average": 12}', "", 40)
        assert common.powershell_json(_ctx(), "Get-Thing") == {"Average": 12}
        cmd = mock_run.call_args.args[0]
        assert "-NonInteractive" in cmd
        assert cmd[-1].endswith("ConvertTo-Json -Compress -Depth 3")

    @patch("hostdiag.checks.common.run_command")
    def test_empty_output(self, mock_run) -> None:
        mock_run.return_value = CommandResult(0, "  \n", "", 40)
        assert common.powershell_json(_ctx(), "Get-Nothing") is None

    @patch("hostdiag.checks.common.run_command")
    def test_missing_powershell(self, mock_run) -> None:
        mock_run.return_value = CommandResult(-1, "", "Command not found", 1, not_found=True)
        with pytest.raises(CheckUnavailable):
            common.powershell_json(_ctx(), "Get-Thing")

    @patch("hostdiag.checks.common.run_command")
    def test_nonzero_exit(self, mock_run) -> None:
        mock_run.return_value = CommandResult(1, "", "Get-Thing : not recognized", 30)
        with pytest.raises(RuntimeError, match="not recognized"):
            common.powershell_json(_ctx(), "Get-Thing")

    @patch("hostdiag.checks.common.run_command")
    def test_timeout(self, mock_run) -> None:
        mock_run.return_value = CommandResult(-1, "", "timed out", 30_000, timed_out=True)
        with pytest.raises(TimeoutError):
            common.powershell_json(_ctx(), "Get-Thing")

    def test_as_list(self) -> None:
        assert common.as_list(None) == []
        assert common.as_list({"a": 1}) == [{"a": 1}]
        assert common.as_list([1, 2]) == [1, 2]


# ── System ───────────────────────────────────────────────────────────────────


class TestSystemChecks:
    @patch("hostdiag.checks.system.shutil.disk_usage")
    def test_disk_free_low(self, mock_usage) -> None:
        mock_usage.return_value = DiskUsage(total=100 * _GB, used=97 * _GB, free=3 * _GB)
        f = system.check_disk_free(_ctx("disk_free"))
        assert f is not None
        assert f.impact == 8
        assert f.fix_id == "disk-cleanup"
        assert "3.0%" in f.message

    @patch("hostdiag.checks.system.shutil.disk_usage")
    def test_disk_free_ok(self, mock_usage) -> None:
        mock_usage.return_value = DiskUsage(total=100 * _GB, used=50 * _GB, free=50 * _GB)
        assert system.check_disk_free(_ctx("disk_free")) is None

    @patch("hostdiag.checks.system.powershell_json", return_value={"Average": 97})
    def test_cpu_load_high(self, _mock) -> None:
        f = system.check_cpu_load(_ctx("cpu_load"))
        assert f is not None
        assert "97%" in f.message

    @patch("hostdiag.checks.system.powershell_json", return_value={"Average": 20})
    def test_cpu_load_normal(self, _mock) -> None:
        assert system.check_cpu_load(_ctx("cpu_load")) is None

    @patch(
        "hostdiag.checks.system.powershell_json",
        return_value={"FreePhysicalMemory": 400_000, "TotalVisibleMemorySize": 8_000_000},
    )
    def test_memory_pressure(self, _mock) -> None:
        f = system.check_memory_pressure(_ctx("memory_pressure"))
        assert f is not None
        assert "5.0%" in f.message

    @patch("hostdiag.checks.system.powershell_json", return_value=45)
    def test_uptime_long(self, _mock) -> None:
        f = system.check_system_uptime(_ctx("system_uptime"))
        assert f is not None
        assert "45 days" in f.message

    @patch(
        "hostdiag.checks.system.powershell_json",
        return_value={"ComponentBasedServicing": False, "WindowsUpdate": True},
    )
    def test_pending_reboot(self, mock_ps) -> None:
        f = system.check_pending_reboot(_ctx("pending_reboot"))
        assert f is not None
        assert f.evidence == "pending: WindowsUpdate"
        assert "Test-Path" in mock_ps.call_args.args[1]

    @patch(
        "hostdiag.checks.system.powershell_json",
        return_value={"ComponentBasedServicing": False, "WindowsUpdate": False},
    )
    def test_no_pending_reboot(self, _mock) -> None:
        assert system.check_pending_reboot(_ctx("pending_reboot")) is None


# ── Network ──────────────────────────────────────────────────────────────────


class TestNetworkChecks:
    @patch("hostdiag.checks.network.socket.getaddrinfo", side_effect=socket.gaierror("no name"))
    def test_dns_failure(self, _mock) -> None:
        f = network.check_dns_resolve(_ctx("dns_resolve"))
        assert f is not None
        assert f.fix_id == "flush-dns"

    @patch(
        "hostdiag.checks.network.socket.getaddrinfo",
        return_value=[(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("1.2.3.4", 0))],
    )
    def test_dns_ok(self, _mock) -> None:
        assert network.check_dns_resolve(_ctx("dns_resolve")) is None

    @patch("hostdiag.checks.network.httpx.Client")
    def test_reachability_ok(self, mock_client_cls) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.return_value = httpx.Response(200)
        assert network.check_internet_reachability(_ctx("internet_reachability")) is None

    @patch("hostdiag.checks.network.httpx.Client")
    def test_reachability_captive_portal(self, mock_client_cls) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.return_value = httpx.Response(302)
        f = network.check_internet_reachability(_ctx("internet_reachability"))
        assert f is not None
        assert "302" in f.message

    @patch("hostdiag.checks.network.httpx.Client")
    def test_reachability_down(self, mock_client_cls) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.side_effect = httpx.ConnectError("refused")
        f = network.check_internet_reachability(_ctx("internet_reachability"))
        assert f is not None
        assert f.message == "No outbound HTTP connectivity"


# ── Event log ────────────────────────────────────────────────────────────────


class TestEventLogChecks:
    def _query(self, fast_settings, backend) -> ResilientQuery:
        return ResilientQuery(backend, fast_settings)

    def test_system_errors_over_threshold(self, fast_settings, backend_factory) -> None:
        events = [{"Source": "disk"}] * 8 + [{"Source": "Service Control Manager"}] * 4
        backend = backend_factory(fetch=lambda s, f, c: events)
        f = eventlog.check_system_event_errors(_ctx("system_event_errors", fast_settings, self._query(fast_settings, backend)))
        assert f is not None
        assert f.message.startswith("12 error events")
        assert "disk (8)" in f.evidence
        assert backend.fetch_calls[0].criteria == {"level": 2}
        assert backend.fetch_calls[0].start is not None

    def test_system_errors_below_threshold(self, fast_settings, backend_factory) -> None:
        backend = backend_factory(fetch=lambda s, f, c: [{"Source": "disk"}])
        ctx = _ctx("system_event_errors", fast_settings, self._query(fast_settings, backend))
        assert eventlog.check_system_event_errors(ctx) is None

    def test_system_log_missing(self, fast_settings, backend_factory) -> None:
        def fetch(s, f, c):
            raise QueryNotFound("no channel")

        ctx = _ctx("system_event_errors", fast_settings, self._query(fast_settings, backend_factory(fetch=fetch)))
        with pytest.raises(CheckUnavailable):
            eventlog.check_system_event_errors(ctx)

    def test_security_access_denied_gives_low_confidence_finding(self, fast_settings, backend_factory) -> None:
        def fetch(s, f, c):
            raise QueryAccessDenied("Access is denied.")

        backend = backend_factory(fetch=fetch, count=lambda s, f, c: 5120)
        ctx = _ctx("security_logon_failures", fast_settings, self._query(fast_settings, backend))
        f = eventlog.check_security_logon_failures(ctx)
        assert f is not None
        assert f.confidence == 2
        assert "5120" in f.evidence
        assert "summary only" in f.evidence

    def test_security_many_failures(self, fast_settings, backend_factory) -> None:
        events = [{"Account Name": "admin"}] * 25
        backend = backend_factory(fetch=lambda s, f, c: events)
        ctx = _ctx("security_logon_failures", fast_settings, self._query(fast_settings, backend))
        f = eventlog.check_security_logon_failures(ctx)
        assert f is not None
        assert f.impact == 8
        assert "admin (25)" in f.evidence
        assert backend.fetch_calls[0].criteria == {"event_ids": [4625]}

    def test_security_query_timeout_skips(self, fast_settings, backend_factory) -> None:
        def hang(s, f, c):
            c.wait(5)
            return []

        settings = fast_settings.model_copy(update={"query_timeout_max": 0.1})
        ctx = _ctx("security_logon_failures", settings, ResilientQuery(backend_factory(fetch=hang), settings))
        assert eventlog.check_security_logon_failures(ctx) is None


# ── Security ─────────────────────────────────────────────────────────────────


class TestSecurityChecks:
    @patch(
        "hostdiag.checks.security.powershell_json",
        return_value={"AntivirusEnabled": True, "RealTimeProtectionEnabled": False, "AntivirusSignatureAge": 1},
    )
    def test_defender_realtime_off(self, _mock) -> None:
        f = security.check_defender_status(_ctx("defender_status"))
        assert f is not None
        assert f.impact == 9
        assert f.fix_id == "enable-defender-realtime"

    @patch(
        "hostdiag.checks.security.powershell_json",
        return_value={"AntivirusEnabled": True, "RealTimeProtectionEnabled": True, "AntivirusSignatureAge": 12},
    )
    def test_defender_stale_signatures(self, _mock) -> None:
        f = security.check_defender_status(_ctx("defender_status"))
        assert f is not None
        assert "12 days" in f.message

    @patch(
        "hostdiag.checks.security.powershell_json",
        return_value={"AntivirusEnabled": True, "RealTimeProtectionEnabled": True, "AntivirusSignatureAge": 0},
    )
    def test_defender_healthy(self, _mock) -> None:
        assert security.check_defender_status(_ctx("defender_status")) is None

    @pytest.mark.parametrize("empty", [None, {}])
    def test_defender_no_data_is_unavailable(self, empty) -> None:
        with patch("hostdiag.checks.security.powershell_json", return_value=empty):
            with pytest.raises(CheckUnavailable, match="no data"):
                security.check_defender_status(_ctx("defender_status"))

    @patch(
        "hostdiag.checks.security.powershell_json",
        return_value=[{"Name": "Domain", "Enabled": True}, {"Name": "Public", "Enabled": False}],
    )
    def test_firewall_profile_disabled(self, _mock) -> None:
        f = security.check_firewall_profiles(_ctx("firewall_profiles"))
        assert f is not None
        assert "Public" in f.message
        assert f.evidence == "1 of 2 profiles disabled"

    @patch("hostdiag.checks.security.powershell_json", return_value={"Name": "Domain", "Enabled": True})
    def test_firewall_single_profile_enabled(self, _mock) -> None:
        assert security.check_firewall_profiles(_ctx("firewall_profiles")) is None
