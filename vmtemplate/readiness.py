"""Guest readiness: heartbeat, address, remoting, session."""

from __future__ import annotations

from typing import Callable, Optional

from vmtemplate.constants import HEARTBEAT_OK
from vmtemplate.exceptions import TemplateBuildError, WaitTimeoutError
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.models import BuildSettings, ConnectionInfo, Credential, PollResult, VirtualMachineHandle
from vmtemplate.utils import log
from vmtemplate.waiter import PollingWaiter


class GuestReadinessProbe:
    """Wait for a freshly booted guest and open a remote session to it.

    First boot reboots the guest one or more times, so any failure restarts
    the whole sequence from the heartbeat check, up to
    ``settings.readiness_attempts`` times.
    """

    def __init__(
        self,
        hypervisor: Hypervisor,
        transport,
        credential: Credential,
        settings: BuildSettings,
        waiter: Optional[PollingWaiter] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.hypervisor = hypervisor
        self.transport = transport
        self.credential = credential
        self.settings = settings
        self.waiter = waiter or PollingWaiter(settings)
        self._sleep = sleep or self.waiter.sleep
        self.attempts_made = 0

    def connect(self, handle: VirtualMachineHandle) -> Optional[ConnectionInfo]:
        attempts = self.settings.readiness_attempts
        self.attempts_made = 0
        for attempt in range(1, attempts + 1):
            self.attempts_made = attempt
            log("INFO", f"Waiting for {handle.name} to become reachable (attempt {attempt}/{attempts})")
            try:
                info = self._attempt(handle)
            except Exception as exc:  # noqa: BLE001
                log("WARN", f"Connection attempt {attempt}/{attempts} to {handle.name} failed: {exc}")
            else:
                log("SUCCESS", f"Connected to {handle.name} at {info.address}")
                return info
            if attempt < attempts:
                self._sleep(self.settings.poll_interval)
        log("ERROR", f"Could not connect to {handle.name} after {attempts} attempts")
        return None

    def _attempt(self, handle: VirtualMachineHandle) -> ConnectionInfo:
        self.wait_heartbeat(handle)
        address = self.wait_address(handle)
        self.wait_remoting(address)
        session = self.transport.open_session(address, self.credential)
        return ConnectionInfo(machine_name=handle.name, address=address, session=session)

    def wait_heartbeat(self, handle: VirtualMachineHandle) -> None:
        def heartbeat() -> PollResult:
            status = self.hypervisor.heartbeat_status(handle)
            if status == HEARTBEAT_OK:
                return PollResult.ready(status)
            return PollResult.not_ready(f"heartbeat {status or 'absent'}")

        outcome = self.waiter.wait_until(
            heartbeat, self.settings.poll_interval, self.settings.wait_timeout, description=f"{handle.name} heartbeat"
        )
        if not outcome:
            raise WaitTimeoutError("Heartbeat wait", self.settings.wait_timeout, outcome.last_reason)
        log("DEBUG", f"Heartbeat OK after {outcome.polls} polls", verbose=self.settings.verbose)

    def wait_address(self, handle: VirtualMachineHandle) -> str:
        def address() -> PollResult:
            addresses = self.hypervisor.ip_addresses(handle)
            if addresses:
                return PollResult.ready(addresses[0])
            return PollResult.not_ready("no address reported")

        outcome = self.waiter.wait_until(
            address, self.settings.poll_interval, self.settings.wait_timeout, description=f"{handle.name} address"
        )
        if not outcome:
            raise WaitTimeoutError("Address wait", self.settings.wait_timeout, outcome.last_reason)
        log("INFO", f"{handle.name} reports address {outcome.value} (after {outcome.polls} polls)")
        return outcome.value

    def wait_remoting(self, address: str) -> None:
        outcome = self.waiter.wait_until(
            lambda: self.transport.is_reachable(address),
            self.settings.poll_interval,
            self.settings.wait_timeout,
            description=f"remote management on {address}",
        )
        if not outcome:
            raise WaitTimeoutError("Remote management wait", self.settings.wait_timeout, address)


def require_connection(info: Optional[ConnectionInfo], machine: str) -> ConnectionInfo:
    if info is None or info.session is None:
        raise TemplateBuildError(f"No remote session could be established to {machine}")
    return info
