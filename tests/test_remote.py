"""Tests for vmtemplate.remote module."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests
from winrm.exceptions import WinRMTransportError

from vmtemplate.exceptions import TransientError
from vmtemplate.models import Credential
from vmtemplate.remote import CommandResult, WinRMSession, WinRMTransport, format_result, wsman_endpoint


def _response(status_code=0, std_out=b"", std_err=b""):
    return SimpleNamespace(status_code=status_code, std_out=std_out, std_err=std_err)


class TestEndpoint:
    def test_ipv4(self):
        assert wsman_endpoint("10.0.0.5") == "http://10.0.0.5:5985/wsman"

    def test_ipv6_bracketed(self):
        assert wsman_endpoint("fd00::5", 5986) == "http://[fd00::5]:5986/wsman"


class TestIsReachable:
    def test_any_http_answer_counts(self):
        with patch("vmtemplate.remote.requests.post", return_value=MagicMock(status_code=401)) as mock_post:
            assert WinRMTransport().is_reachable("10.0.0.5") is True
        assert mock_post.call_args[0][0] == "http://10.0.0.5:5985/wsman"

    def test_connection_error_is_unreachable(self):
        with patch("vmtemplate.remote.requests.post", side_effect=requests.ConnectionError("refused")):
            assert WinRMTransport().is_reachable("10.0.0.5") is False


class TestOpenSession:
    def test_probe_command_runs(self):
        fake = MagicMock()
        fake.run_ps.return_value = _response(0, b"BUILD01\r\n")
        with patch("vmtemplate.remote.winrm.Session", return_value=fake) as mock_session:
            session = WinRMTransport(transport="ntlm").open_session("10.0.0.5", Credential("Administrator", "pw"))
        mock_session.assert_called_once_with(
            "http://10.0.0.5:5985/wsman", auth=("Administrator", "pw"), transport="ntlm"
        )
        assert isinstance(session, WinRMSession)
        assert session.address == "10.0.0.5"

    def test_rejected_probe_is_transient(self):
        fake = MagicMock()
        fake.run_ps.return_value = _response(1, b"", b"denied")
        with patch("vmtemplate.remote.winrm.Session", return_value=fake):
            with pytest.raises(TransientError, match="denied"):
                WinRMTransport().open_session("10.0.0.5", Credential("a", "b"))


class TestWinRMSession:
    def test_decodes_output(self):
        fake = MagicMock()
        fake.run_ps.return_value = _response(0, b"ok\n", b"")
        result = WinRMSession("10.0.0.5", fake).run_powershell("Get-Date")
        assert result == CommandResult(0, "ok\n", "")
        assert result.ok

    def test_transport_errors_are_transient(self):
        fake = MagicMock()
        fake.run_ps.side_effect = WinRMTransportError("http", 500, "boom")
        with pytest.raises(TransientError):
            WinRMSession("10.0.0.5", fake).run_powershell("Get-Date")

    def test_request_errors_are_transient(self):
        fake = MagicMock()
        fake.run_ps.side_effect = requests.ConnectionError("reset")
        with pytest.raises(TransientError):
            WinRMSession("10.0.0.5", fake).run_powershell("Get-Date")

    def test_closed_session_refuses_commands(self):
        session = WinRMSession("10.0.0.5", MagicMock())
        session.close()
        with pytest.raises(TransientError, match="closed"):
            session.run_powershell("Get-Date")


class TestFormatResult:
    def test_prefers_stderr(self):
        assert format_result(CommandResult(2, "out", "err\n")) == "status 2: err"

    def test_none(self):
        assert format_result(None) == "no result"
