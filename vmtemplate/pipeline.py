"""End-to-end template build as an ordered list of named stages."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional

from vmtemplate.exceptions import StageError, TemplateBuildError
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.lifecycle import VmLifecycleController
from vmtemplate.models import BuildSettings, ConnectionInfo, ProvisioningRequest, VirtualMachineHandle
from vmtemplate.patching import PatchApplier
from vmtemplate.readiness import GuestReadinessProbe, require_connection
from vmtemplate.sealer import TemplateSealer
from vmtemplate.stager import DiskImageStager
from vmtemplate.sysprep import SysprepOrchestrator
from vmtemplate.tools import ExternalTools
from vmtemplate.utils import ensure_directory, log
from vmtemplate.waiter import PollingWaiter


class StagePlan(NamedTuple):
    name: str
    requires: str
    produces: str


# Execution order.
STAGE_PLAN: List[StagePlan] = [
    StagePlan("stage-disk", "source image and config directory", "disk file with config payload"),
    StagePlan("patch", "unattached disk file", "patched disk and patch logs"),
    StagePlan("create-vm", "patched disk, no VM with this name", "running VM"),
    StagePlan("connect", "running VM", "remote session to the guest"),
    StagePlan("generalize", "remote session", "generalized guest, powered off"),
    StagePlan("seal", "powered-off VM", "VM deleted, template disk published"),
]


@dataclass
class Stage:
    name: str
    requires: str
    produces: str
    action: Callable[[], None]


class ProvisioningPipeline:
    def __init__(
        self,
        request: ProvisioningRequest,
        settings: BuildSettings,
        hypervisor: Hypervisor,
        transport,
        tools: Optional[ExternalTools] = None,
        waiter: Optional[PollingWaiter] = None,
    ) -> None:
        self.request = request
        self.settings = settings
        self.hypervisor = hypervisor
        self.tools = tools or ExternalTools(settings)
        self.waiter = waiter or PollingWaiter(settings)
        self.stager = DiskImageStager(hypervisor, self.tools, settings)
        self.patcher = PatchApplier(self.tools, settings)
        self.lifecycle = VmLifecycleController(hypervisor, settings)
        self.probe = GuestReadinessProbe(hypervisor, transport, request.credential, settings, waiter=self.waiter)
        self.sysprep = SysprepOrchestrator(hypervisor, settings, waiter=self.waiter)
        self.sealer = TemplateSealer(hypervisor, self.lifecycle, self.tools, settings)
        self.handle: Optional[VirtualMachineHandle] = None
        self.connection: Optional[ConnectionInfo] = None
        self.template: Optional[Path] = None
        self.completed: List[str] = []

    @staticmethod
    def plan() -> List[StagePlan]:
        return list(STAGE_PLAN)

    def stages(self) -> List[Stage]:
        actions = {
            "stage-disk": self._stage_disk,
            "patch": self._patch,
            "create-vm": self._create_vm,
            "connect": self._connect,
            "generalize": self._generalize,
            "seal": self._seal,
        }
        return [Stage(step.name, step.requires, step.produces, actions[step.name]) for step in STAGE_PLAN]

    def run(self) -> Path:
        req = self.request
        ensure_directory(req.work_dir)
        ensure_directory(req.log_dir)
        started = time.monotonic()
        for stage in self.stages():
            log("INFO", f"==> {stage.name}: {stage.produces}")
            try:
                stage.action()
            except Exception as exc:
                log("ERROR", f"Stage {stage.name} failed: {exc}")
                raise StageError(
                    stage.name,
                    exc,
                    machine=req.machine_name,
                    host=req.host,
                    disk=str(req.disk_path),
                ) from exc
            self.completed.append(stage.name)
        if self.template is None:
            raise TemplateBuildError("Pipeline finished without producing a template")
        log("SUCCESS", f"Template {self.template} built in {int(time.monotonic() - started)}s")
        return self.template

    def _stage_disk(self) -> None:
        req = self.request
        self.stager.build_disk(req.image, req.edition, req.config_dir, req.disk_path)

    def _patch(self) -> None:
        req = self.request
        self.patcher.apply_patches(req.disk_path, req.patch_server, req.patch_target_group, req.work_dir, req.log_dir)

    def _create_vm(self) -> None:
        req = self.request
        self.handle = self.lifecycle.create_and_start(
            req.machine_name, req.disk_path, req.mac_address, req.extra_disk_sizes
        )

    def _connect(self) -> None:
        assert self.handle is not None
        self.connection = require_connection(self.probe.connect(self.handle), self.handle.name)

    def _generalize(self) -> None:
        self.sysprep.generalize(self.connection, self.settings.shutdown_timeout)

    def _seal(self) -> None:
        assert self.handle is not None
        req = self.request
        self.template = self.sealer.seal(self.handle, req.disk_path, req.template_path, req.log_dir)
