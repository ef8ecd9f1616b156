"""Remote administration of the guest over WinRM."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import requests
import winrm
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError, WinRMTransportError

from vmtemplate.constants import WINRM_PORT, WINRM_PROBE_TIMEOUT, WINRM_TRANSPORT
from vmtemplate.exceptions import TransientError
from vmtemplate.models import Credential
from vmtemplate.utils import log

WINRM_ERRORS = (WinRMError, WinRMTransportError, WinRMOperationTimeoutError, requests.RequestException)


def wsman_endpoint(address: str, port: int = WINRM_PORT) -> str:
    host = f"[{address}]" if ":" in address else address
    return f"http://{host}:{port}/wsman"


@dataclass
class CommandResult:
    status_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.status_code == 0


class WinRMSession:
    """Authenticated session to one guest address."""

    def __init__(self, address: str, session: winrm.Session) -> None:
        self.address = address
        self._session = session
        self.closed = False

    def run_powershell(self, script: str) -> CommandResult:
        if self.closed:
            raise TransientError(f"Session to {self.address} is closed")
        try:
            response = self._session.run_ps(script)
        except WINRM_ERRORS as exc:
            raise TransientError(f"WinRM command on {self.address} failed: {exc}") from exc
        return CommandResult(
            status_code=response.status_code,
            stdout=_decode(response.std_out),
            stderr=_decode(response.std_err),
        )

    def close(self) -> None:
        self.closed = True


def _decode(raw) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw or ""


class WinRMTransport:
    def __init__(self, port: int = WINRM_PORT, transport: str = WINRM_TRANSPORT, verbose: bool = False) -> None:
        self.port = port
        self.transport = transport
        self.verbose = verbose

    def is_reachable(self, address: str) -> bool:
        """True once the WS-Management listener answers HTTP at all (any status, auth not required)."""
        try:
            response = requests.post(
                wsman_endpoint(address, self.port),
                data=b"",
                headers={"Content-Type": "application/soap+xml;charset=UTF-8"},
                timeout=WINRM_PROBE_TIMEOUT,
            )
        except requests.RequestException as exc:
            log("DEBUG", f"WinRM listener at {address} not reachable: {exc}", verbose=self.verbose)
            return False
        log("DEBUG", f"WinRM listener at {address} answered HTTP {response.status_code}", verbose=self.verbose)
        return True

    def open_session(self, address: str, credential: Credential) -> WinRMSession:
        session = winrm.Session(
            wsman_endpoint(address, self.port),
            auth=(credential.username, credential.password),
            transport=self.transport,
        )
        wrapped = WinRMSession(address, session)
        # WinRM is stateless HTTP; run a trivial command so bad credentials surface here
        result = wrapped.run_powershell("$env:COMPUTERNAME")
        if not result.ok:
            raise TransientError(
                f"WinRM session to {address} rejected the probe command (status {result.status_code}): "
                f"{result.stderr.strip()}"
            )
        log("DEBUG", f"WinRM session established to {address} ({result.stdout.strip()})", verbose=self.verbose)
        return wrapped


def format_result(result: Optional[CommandResult]) -> str:
    if result is None:
        return "no result"
    detail = (result.stderr or result.stdout).strip()
    return f"status {result.status_code}" + (f": {detail}" if detail else "")
