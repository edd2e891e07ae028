"""
Test Orchestrator.

Runs every declared system as an independent unit of work: provision an overlay
disk, boot a VM on it, execute the step sequence, tear everything down. Systems
run concurrently and share nothing but the read-only base images. Failures are
isolated per system; cancellation unwinds every in-flight system through its
resource scopes before it propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from vtb.config import Settings
from vtb.exceptions import OrchestratorError
from vtb.models import RunStep, TestSystem, TestWorkflow, WaitStep, load_workflow
from vtb.results import SystemResult, WorkflowResult
from vtb.services.disk_provisioner import DiskProvisioner
from vtb.services.qemu_executor import QemuCommandExecutor
from vtb.services.remote_shell import default_shell_factory
from vtb.services.report import write_report
from vtb.services.step_executor import StepExecutor
from vtb.services.vm_manager import ShellFactory, VMManager

logger = logging.getLogger(__name__)


def new_run_dir(work_dir: Path) -> Path:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return work_dir / f"{stamp}-{uuid.uuid4().hex[:8]}"


class WorkflowOrchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        run_dir: Path,
        executor: QemuCommandExecutor | None = None,
        shell_factory: ShellFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.run_dir = run_dir
        self.executor = executor or QemuCommandExecutor(settings.qemu_img)
        self.shell_factory = shell_factory or default_shell_factory(
            connect_timeout=settings.connect_timeout_seconds,
            operation_timeout=settings.connect_timeout_seconds * 6,
        )
        self.provisioner = DiskProvisioner(run_dir, self.executor, keep_disks=settings.keep_disks)
        self.vm_manager = VMManager(settings, self.executor, self.shell_factory, run_dir=run_dir)
        self._sleep = sleep
        self._clock = clock

    def _step_executor(self) -> StepExecutor:
        return StepExecutor(
            self.shell_factory,
            state_dir=self.settings.guest_state_dir,
            reconnect_timeout=self.settings.reconnect_timeout_seconds,
            poll_interval=self.settings.poll_interval_seconds,
            script_timeout=self.settings.script_timeout_seconds,
            command_timeout=self.settings.connect_timeout_seconds * 6,
            sleep=self._sleep,
            clock=self._clock,
        )

    async def run(self, workflow: TestWorkflow) -> WorkflowResult:
        limit = self.settings.max_parallel or len(workflow.systems)
        semaphore = asyncio.Semaphore(limit)
        logger.info(
            "workflow_start systems=%d steps=%d parallel=%d run_dir=%s",
            len(workflow.systems),
            len(workflow.steps),
            limit,
            self.run_dir,
        )
        results = await asyncio.gather(
            *(self._run_system(system, workflow.steps, semaphore) for system in workflow.systems)
        )
        result = WorkflowResult.from_results(results)
        logger.info("workflow_done passed=%s", result.passed)
        return result

    async def _run_system(
        self,
        system: TestSystem,
        steps: Sequence[WaitStep | RunStep],
        semaphore: asyncio.Semaphore,
    ) -> SystemResult:
        async with semaphore:
            logger.info(
                "system_start system=%s image=%s disk_size=%d arch=%s",
                system.name,
                system.image,
                system.disk_size,
                system.architecture,
            )
            try:
                async with self.provisioner.overlay_disk(system) as disk:
                    async with self.vm_manager.vm_session(system, disk) as session:
                        await self.vm_manager.wait_until_ready(session)
                        result = await self._step_executor().run(session, steps)
            except OrchestratorError as e:
                logger.error("system_failed system=%s code=%s message=%s", system.name, e.code, e.message)
                result = SystemResult.aborted(system.name, len(steps), reason=e.code, message=e.message)
            except Exception as e:
                logger.exception("system_internal_error system=%s", system.name)
                result = SystemResult.aborted(system.name, len(steps), reason="INTERNAL_ERROR", message=str(e))
            logger.info("system_done system=%s passed=%s", system.name, result.passed)
            return result


async def run_workflow_file(
    workflow_path: Path,
    *,
    project_dir: Path,
    settings: Settings,
    executor: QemuCommandExecutor | None = None,
    shell_factory: ShellFactory | None = None,
) -> WorkflowResult:
    """Load, run and report one workflow. ``ConfigError`` aborts before any VM starts."""
    settings.validate()
    resolved = settings.resolve(project_dir)
    workflow = load_workflow(workflow_path, project_dir=project_dir, images_dir=resolved.images_dir)
    run_dir = new_run_dir(resolved.work_dir)
    run_dir.mkdir(parents=True, exist_ok=True)
    orchestrator = WorkflowOrchestrator(resolved, run_dir=run_dir, executor=executor, shell_factory=shell_factory)
    result = await orchestrator.run(workflow)
    report = await write_report(result, run_dir / "report.json", workflow=workflow_path)
    logger.info("report_written path=%s", report)
    return result
