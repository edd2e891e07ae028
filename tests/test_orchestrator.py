from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from pathlib import Path

import pytest

from vtb import models
from vtb.config import Settings
from vtb.exceptions import ConfigError
from vtb.results import StepState
from vtb.services.orchestrator import WorkflowOrchestrator, new_run_dir, run_workflow_file
from vtb.services.remote_shell import SSHEndpoint

from fake_qemu import FakeQemuCommandExecutor
from fake_shell import FakeClock, FakeGuest


def _router(guests: dict[str, FakeGuest]):
    """One fake guest per system, keyed by the SSH user of each system."""

    def factory(endpoint: SSHEndpoint):
        return guests[endpoint.user].factory(endpoint)

    return factory


def _workflow(systems, steps=()) -> models.TestWorkflow:
    return models.TestWorkflow(systems=tuple(systems), steps=tuple(steps))


def _run(script: str = "#!/bin/sh\ntrue\n", **kwargs) -> models.RunStep:
    return models.RunStep(action="run", script=script, **kwargs)


def _orchestrator(settings: Settings, tmp_path: Path, guests, executor=None, **kwargs) -> WorkflowOrchestrator:
    clock = FakeClock()
    return WorkflowOrchestrator(
        settings,
        run_dir=tmp_path / "run",
        executor=executor or FakeQemuCommandExecutor(),
        shell_factory=_router(guests),
        sleep=kwargs.pop("sleep", clock.sleep),
        clock=clock,
    )


@pytest.mark.anyio
async def test_failure_in_one_system_does_not_affect_the_other(settings: Settings, tmp_path: Path, make_system) -> None:
    guests = {"a": FakeGuest(), "b": FakeGuest()}
    guests["a"].on_step(2, exit_code=1)
    executor = FakeQemuCommandExecutor()
    orchestrator = _orchestrator(settings, tmp_path, guests, executor)
    workflow = _workflow(
        [make_system("a", user="a"), make_system("b", user="b")],
        [_run(), _run(), _run("#!/bin/sh\nexit 1\n"), _run()],
    )

    result = await orchestrator.run(workflow)

    assert result.passed is False
    assert result.exit_status() == 1
    a, b = result.systems["a"], result.systems["b"]
    assert [o.state for o in a.outcomes] == [StepState.COMPLETED, StepState.COMPLETED, StepState.FATAL]
    assert a.pending == (3,)
    assert b.passed is True
    assert [o.state for o in b.outcomes] == [StepState.COMPLETED] * 4
    assert guests["a"].executed_steps == [0, 1, 2]
    assert guests["b"].executed_steps == [0, 1, 2, 3]

    assert len(executor.created) == 2
    assert {overlay for _, _, overlay, _ in executor.created} == {tmp_path / "run" / "a.qcow2", tmp_path / "run" / "b.qcow2"}
    assert not (tmp_path / "run" / "a.qcow2").exists()
    assert not (tmp_path / "run" / "b.qcow2").exists()
    assert all(p.returncode is not None for p in executor.processes)
    assert result.first_failure().system == "a"


@pytest.mark.anyio
async def test_provisioning_failure_is_isolated(settings: Settings, tmp_path: Path, make_system) -> None:
    guests = {"a": FakeGuest(), "b": FakeGuest()}
    executor = FakeQemuCommandExecutor()
    orchestrator = _orchestrator(settings, tmp_path, guests, executor)
    workflow = _workflow(
        [make_system("a", user="a", image=tmp_path / "missing.img"), make_system("b", user="b")],
        [_run(), _run()],
    )

    result = await orchestrator.run(workflow)

    a = result.systems["a"]
    assert a.reason == "PROVISIONING_ERROR"
    assert a.outcomes == ()
    assert a.pending == (0, 1)
    assert result.systems["b"].passed is True
    assert len(executor.launched) == 1


@pytest.mark.anyio
async def test_boot_timeout_releases_resources(settings: Settings, tmp_path: Path, make_system) -> None:
    guests = {"a": FakeGuest(), "b": FakeGuest()}
    guests["a"].reachable = False
    executor = FakeQemuCommandExecutor()
    orchestrator = _orchestrator(replace(settings, boot_timeout_seconds=0.05), tmp_path, guests, executor)
    workflow = _workflow([make_system("a", user="a"), make_system("b", user="b")], [_run()])

    result = await orchestrator.run(workflow)

    assert result.systems["a"].reason == "BOOT_TIMEOUT"
    assert result.systems["a"].pending == (0,)
    assert result.systems["b"].passed is True
    assert guests["a"].executed_steps == []
    assert all(p.returncode is not None for p in executor.processes)
    assert not (tmp_path / "run" / "a.qcow2").exists()


@pytest.mark.anyio
async def test_unexpected_error_is_reported_per_system(settings: Settings, tmp_path: Path, make_system) -> None:
    class _Broken(FakeQemuCommandExecutor):
        async def launch(self, cmd, log_file):
            raise RuntimeError("hypervisor exploded")

    orchestrator = _orchestrator(settings, tmp_path, {"a": FakeGuest()}, _Broken())
    result = await orchestrator.run(_workflow([make_system("a", user="a")], [_run()]))

    assert result.systems["a"].reason == "INTERNAL_ERROR"
    assert "hypervisor exploded" in result.systems["a"].message
    assert not (tmp_path / "run" / "a.qcow2").exists()


@pytest.mark.anyio
async def test_cancellation_releases_every_system(settings: Settings, tmp_path: Path, make_system) -> None:
    guests = {"a": FakeGuest(), "b": FakeGuest()}
    executor = FakeQemuCommandExecutor()
    waiting: list[float] = []
    both_waiting = asyncio.Event()

    async def sleep(seconds: float) -> None:
        waiting.append(seconds)
        if len(waiting) == 2:
            both_waiting.set()
        await asyncio.sleep(3600)

    orchestrator = _orchestrator(settings, tmp_path, guests, executor, sleep=sleep)
    workflow = _workflow(
        [make_system("a", user="a"), make_system("b", user="b")],
        [models.WaitStep(action="wait", duration=600)],
    )

    task = asyncio.create_task(orchestrator.run(workflow))
    await both_waiting.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(executor.processes) == 2
    assert all(p.returncode is not None for p in executor.processes)
    assert not (tmp_path / "run" / "a.qcow2").exists()
    assert not (tmp_path / "run" / "b.qcow2").exists()


@pytest.mark.anyio
async def test_max_parallel_limits_concurrent_systems(settings: Settings, tmp_path: Path, make_system) -> None:
    class _Tracking(FakeQemuCommandExecutor):
        def __init__(self) -> None:
            super().__init__()
            self.running_at_launch: list[int] = []

        async def launch(self, cmd, log_file):
            self.running_at_launch.append(sum(p.returncode is None for p in self.processes))
            return await super().launch(cmd, log_file)

    executor = _Tracking()
    guests = {name: FakeGuest() for name in ("a", "b", "c")}
    orchestrator = _orchestrator(replace(settings, max_parallel=1), tmp_path, guests, executor)
    workflow = _workflow([make_system(n, user=n) for n in ("a", "b", "c")], [_run()])

    result = await orchestrator.run(workflow)

    assert result.passed is True
    assert executor.running_at_launch == [0, 0, 0]


@pytest.mark.anyio
async def test_keep_disks(settings: Settings, tmp_path: Path, make_system) -> None:
    orchestrator = _orchestrator(replace(settings, keep_disks=True), tmp_path, {"a": FakeGuest()})
    result = await orchestrator.run(_workflow([make_system("a", user="a")], [_run()]))
    assert result.passed is True
    assert (tmp_path / "run" / "a.qcow2").exists()


def test_new_run_dir_is_unique(tmp_path: Path) -> None:
    first, second = new_run_dir(tmp_path), new_run_dir(tmp_path)
    assert first.parent == tmp_path
    assert first != second


def _write_workflow(project: Path, body: str) -> Path:
    path = project / "workflow.toml"
    path.write_text(body, encoding="utf-8")
    return path


@pytest.mark.anyio
async def test_run_workflow_file_writes_report(
    settings: Settings, tmp_path: Path, base_image: Path, private_key: Path
) -> None:
    path = _write_workflow(
        tmp_path,
        """
[[systems]]
system = "customized"
disk-size = "16M"
ssh = { private-key = "keys/id_ed25519" }

[[steps]]
action = "wait"
duration = 0

[[steps]]
action = "run"
script = "#!/bin/sh\\nreboot\\n"
may-disconnect = true
""",
    )
    guest = FakeGuest()
    guest.on_step(1, disconnect=True)
    executor = FakeQemuCommandExecutor()

    result = await run_workflow_file(
        path,
        project_dir=tmp_path,
        settings=replace(settings, poll_interval_seconds=0.01),
        executor=executor,
        shell_factory=guest.factory,
    )

    assert result.passed is True
    assert executor.created[0][0] == base_image
    reports = list(settings.work_dir.glob("*/report.json"))
    assert len(reports) == 1
    report = json.loads(reports[0].read_text(encoding="utf-8"))
    assert report["passed"] is True
    assert report["workflow"] == str(path)
    outcomes = report["systems"]["customized"]["outcomes"]
    assert [o["state"] for o in outcomes] == ["completed", "completed"]
    assert outcomes[1]["disconnected"] is True
    assert (reports[0].parent / "customized.log").exists()


@pytest.mark.anyio
async def test_config_error_aborts_before_any_vm(settings: Settings, tmp_path: Path, private_key: Path) -> None:
    path = _write_workflow(
        tmp_path,
        """
[[systems]]
system = "customized"
disk-size = "16M"
ssh = { private-key = "keys/id_ed25519" }

[[steps]]
action = "run"
script = "echo no interpreter"
""",
    )
    executor = FakeQemuCommandExecutor()

    with pytest.raises(ConfigError):
        await run_workflow_file(path, project_dir=tmp_path, settings=settings, executor=executor)

    assert executor.created == []
    assert executor.launched == []
    assert not settings.work_dir.exists()


@pytest.mark.anyio
async def test_invalid_settings_abort_before_loading(settings: Settings, tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        await run_workflow_file(
            tmp_path / "missing.toml",
            project_dir=tmp_path,
            settings=replace(settings, reconnect_timeout_seconds=0),
        )
