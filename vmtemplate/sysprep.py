"""Generalize the guest and wait for it to power off."""

from __future__ import annotations

from typing import Optional

from vmtemplate.constants import SYSPREP_ARGUMENTS
from vmtemplate.exceptions import TemplateBuildError, TransientError, WaitTimeoutError
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.models import BuildSettings, ConnectionInfo, PollResult, VirtualMachineHandle, WaitOutcome
from vmtemplate.remote import format_result
from vmtemplate.utils import log
from vmtemplate.waiter import PollingWaiter


def sysprep_script() -> str:
    args = ",".join(f"'{arg}'" for arg in SYSPREP_ARGUMENTS)
    # Start-Process returns immediately; sysprep then shuts the guest down on its own.
    return (
        "$sysprep = Join-Path $env:SystemRoot 'System32\\Sysprep\\sysprep.exe'; "
        f"Start-Process -FilePath $sysprep -ArgumentList {args}"
    )


class SysprepOrchestrator:
    def __init__(
        self,
        hypervisor: Hypervisor,
        settings: BuildSettings,
        waiter: Optional[PollingWaiter] = None,
    ) -> None:
        self.hypervisor = hypervisor
        self.settings = settings
        self.waiter = waiter or PollingWaiter(settings)

    def generalize(self, connection: Optional[ConnectionInfo], timeout: Optional[float] = None) -> None:
        if connection is None or connection.session is None:
            raise TemplateBuildError("Cannot generalize: no remote session to the guest")
        if timeout is None:
            timeout = self.settings.shutdown_timeout
        name = connection.machine_name
        handle = VirtualMachineHandle(name, self.hypervisor.host)

        log("INFO", f"Starting sysprep on {name} ({connection.address})")
        try:
            result = connection.session.run_powershell(sysprep_script())
        except TransientError as exc:
            # the guest may already be going down and drop the connection
            log("WARN", f"Connection to {name} dropped after launching sysprep: {exc}")
        else:
            if not result.ok:
                raise TemplateBuildError(f"Sysprep failed to start on {name}: {format_result(result)}")
        finally:
            connection.session.close()

        outcome = self.wait_stopped(handle, timeout)
        if not outcome:
            raise WaitTimeoutError(f"Shutdown of {name} after sysprep", timeout, outcome.last_reason)
        log("SUCCESS", f"{name} generalized and powered off ({int(outcome.elapsed)}s)")

    def wait_stopped(self, handle: VirtualMachineHandle, timeout: Optional[float] = None) -> WaitOutcome:
        """Wait until every integration service reports an empty status."""
        if timeout is None:
            timeout = self.settings.shutdown_timeout
        return self.waiter.wait_until(
            lambda: self.is_stopped(handle),
            self.settings.poll_interval,
            timeout,
            description=f"{handle.name} power-off",
        )

    def is_stopped(self, handle: VirtualMachineHandle) -> PollResult:
        if not self.hypervisor.vm_exists(handle.name):
            return PollResult.failed(f"{handle.name} disappeared from {handle.host} before it powered off")
        statuses = self.hypervisor.integration_statuses(handle)
        running = [status for status in statuses if status]
        if running:
            return PollResult.not_ready(f"{len(running)} of {len(statuses)} integration services still reporting")
        return PollResult.ready()
