"""Custom exceptions for vm-template-builder."""

from __future__ import annotations

from typing import Optional


class TemplateBuildError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(TemplateBuildError):
    """Missing or malformed input; never retried."""


class TransientError(TemplateBuildError):
    """A readiness check could not be answered yet (host busy, guest rebooting)."""


class PollFailedError(TemplateBuildError):
    """A poll step reported a definitive failure."""


class WaitTimeoutError(TemplateBuildError):
    def __init__(self, stage: str, timeout: float, detail: str = "") -> None:
        self.stage = stage
        self.timeout = timeout
        message = f"{stage} did not complete within {int(timeout)}s"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ToolError(TemplateBuildError):
    def __init__(self, tool: str, returncode: int, detail: str = "") -> None:
        self.tool = tool
        self.returncode = returncode
        message = f"{tool} exited with status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StageError(TemplateBuildError):
    """Pipeline failure annotated with the stage and the parameters in play."""

    def __init__(
        self,
        stage: str,
        cause: BaseException,
        *,
        machine: str,
        host: str,
        disk: str,
        detail: Optional[str] = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.machine = machine
        self.host = host
        self.disk = disk
        reason = detail or str(cause) or cause.__class__.__name__
        super().__init__(
            f"Stage '{stage}' failed for machine {machine} on host {host} (disk {disk}): {reason}"
        )
