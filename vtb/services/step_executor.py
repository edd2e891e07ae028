"""
Remote Step Executor.

Runs the ordered steps of a workflow against one booted guest over a single
(lazily re-established) SSH connection and applies the per-step failure
tolerance:

- a script finishing with the connection intact yields its exit status;
- a dropped connection is fatal unless the step allows it, in which case the
  executor waits for the guest to come back and reads the exit status the
  wrapper recorded on the guest before the connection went away;
- a non-zero exit status is fatal unless the step allows it.

A fatal outcome ends the run for that system; later steps stay pending.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from vtb.exceptions import (
    ConnectionLost,
    DisconnectedUnexpected,
    ExitCodeUnavailable,
    ScriptFailure,
    ScriptTimeout,
    StepFailure,
)
from vtb.models import RunStep, WaitStep, describe_step
from vtb.results import StepOutcome, StepState, SystemResult
from vtb.services.remote_shell import RemoteShell, SSHEndpoint
from vtb.services.vm_manager import ShellFactory, VMSession, VMState

logger = logging.getLogger(__name__)
guest_logger = logging.getLogger("vtb.guest")


@dataclass(frozen=True, slots=True)
class GuestPaths:
    """Where a step's script, stdin and recorded exit status live on the guest."""
    script: str
    stdin: str
    status: str

    @classmethod
    def for_step(cls, state_dir: str, index: int) -> GuestPaths:
        base = f"{state_dir.rstrip('/')}/step-{index}"
        return cls(script=f"{base}.script", stdin=f"{base}.stdin", status=f"{base}.status")

    def wrapper(self, *, with_stdin: bool) -> str:
        """Shell command that runs the script and persists its exit status."""
        q = shlex.quote
        stdin = self.stdin if with_stdin else "/dev/null"
        tmp = f"{self.status}.tmp"
        body = (
            "trap '' HUP; "
            f"rm -f {q(self.status)}; "
            f"{q(self.script)} < {q(stdin)}; "
            "code=$?; "
            f"echo $code > {q(tmp)} && mv {q(tmp)} {q(self.status)}; "
            "sync; "
            "exit $code"
        )
        return f"sh -c {q(body)}"


class StepExecutor:
    """Executes the step sequence of one system. One instance per system run."""

    def __init__(
        self,
        shell_factory: ShellFactory,
        *,
        state_dir: str = "/var/tmp/vtb",
        reconnect_timeout: float = 300.0,
        poll_interval: float = 5.0,
        script_timeout: float = 3600.0,
        command_timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.shell_factory = shell_factory
        self.state_dir = state_dir
        self.reconnect_timeout = reconnect_timeout
        self.poll_interval = poll_interval
        self.script_timeout = script_timeout
        self.command_timeout = command_timeout
        self._sleep = sleep
        self._clock = clock
        self._endpoint: SSHEndpoint | None = None
        self._shell: RemoteShell | None = None

    async def run(self, session: VMSession, steps: Sequence[WaitStep | RunStep]) -> SystemResult:
        system = session.system.name
        self._endpoint = session.endpoint
        session.transition(VMState.RUNNING)
        outcomes: list[StepOutcome] = []
        try:
            for index, step in enumerate(steps):
                outcome = await self._run_step(system, index, step)
                outcomes.append(outcome)
                if outcome.fatal:
                    logger.warning(
                        "steps_aborted system=%s failed_step=%d pending=%d",
                        system,
                        index,
                        len(steps) - index - 1,
                    )
                    break
        finally:
            await self._drop_shell()
        return SystemResult.from_outcomes(system, outcomes, len(steps))

    async def _run_step(self, system: str, index: int, step: WaitStep | RunStep) -> StepOutcome:
        started = self._clock()
        logger.info("step_start system=%s index=%d action=%s what=%r", system, index, step.action, describe_step(step))
        try:
            if isinstance(step, WaitStep):
                await self._sleep(step.duration)
                outcome = self._outcome(index, step, started, StepState.COMPLETED)
            else:
                outcome = await self._run_script(system, index, step, started)
        except StepFailure as e:
            outcome = self._outcome(
                index,
                step,
                started,
                StepState.FATAL,
                exit_code=e.exit_code,
                disconnected=e.disconnected,
                reason=e.code,
                message=e.message,
            )
        log = logger.error if outcome.fatal else logger.info
        log(
            "step_done system=%s index=%d state=%s exit_code=%s disconnected=%s elapsed=%.1fs%s",
            system,
            index,
            outcome.state.value,
            outcome.exit_code,
            outcome.disconnected,
            outcome.elapsed_seconds,
            f" reason={outcome.reason}" if outcome.reason else "",
        )
        return outcome

    def _outcome(
        self,
        index: int,
        step: WaitStep | RunStep,
        started: float,
        state: StepState,
        *,
        exit_code: int | None = None,
        disconnected: bool = False,
        reason: str | None = None,
        message: str | None = None,
    ) -> StepOutcome:
        return StepOutcome(
            index=index,
            action=step.action,
            state=state,
            exit_code=exit_code,
            disconnected=disconnected,
            elapsed_seconds=max(self._clock() - started, 0.0),
            reason=reason,
            message=message,
        )

    async def _run_script(self, system: str, index: int, step: RunStep, started: float) -> StepOutcome:
        paths = GuestPaths.for_step(self.state_dir, index)
        shell = await self._staged_shell(system, index, step, paths)

        def echo(line: str) -> None:
            guest_logger.info("[%s] %s", system, line)

        disconnected = False
        try:
            exit_code: int | None = await shell.exec(
                paths.wrapper(with_stdin=step.stdin_file is not None),
                timeout=self.script_timeout,
                on_output=echo,
            )
        except TimeoutError as e:
            raise ScriptTimeout(self.script_timeout) from e
        except ConnectionLost as e:
            await self._drop_shell()
            if not step.may_disconnect:
                raise DisconnectedUnexpected(f"Connection dropped during step {index}: {e.message}") from e
            logger.info("step_disconnected system=%s index=%d awaiting_reconnect=%gs", system, index, self.reconnect_timeout)
            disconnected = True
            exit_code = await self._recover_exit_code(system, paths)

        if exit_code is None:
            if not step.may_fail:
                raise ExitCodeUnavailable(f"No exit status recorded at {paths.status} after reconnect")
            return self._outcome(
                index,
                step,
                started,
                StepState.UNVERIFIED,
                disconnected=disconnected,
                reason="EXIT_CODE_UNAVAILABLE",
                message=f"No exit status recorded at {paths.status} after reconnect",
            )
        if exit_code == 0:
            return self._outcome(index, step, started, StepState.COMPLETED, exit_code=0, disconnected=disconnected)
        # may-fail also tolerates a non-zero status recorded across a disconnect.
        if step.may_fail:
            return self._outcome(
                index,
                step,
                started,
                StepState.FAILED,
                exit_code=exit_code,
                disconnected=disconnected,
                reason="SCRIPT_FAILURE",
                message=f"Script exited with status {exit_code} (tolerated)",
            )
        raise ScriptFailure(exit_code, disconnected=disconnected)

    async def _staged_shell(self, system: str, index: int, step: RunStep, paths: GuestPaths) -> RemoteShell:
        """
        Return a connected shell with the step's files in place.

        A held connection that fails while staging is replaced once, within
        the reconnect grace period; nothing has run on the guest yet.
        """
        shell = await self._ensure_shell(system)
        try:
            await self._stage(shell, step, paths)
            return shell
        except (ConnectionLost, TimeoutError) as e:
            await self._drop_shell()
            logger.info("stage_reconnect system=%s index=%d error=%s", system, index, e)
        shell = await self._ensure_shell(system)
        try:
            await self._stage(shell, step, paths)
        except (ConnectionLost, TimeoutError) as e:
            await self._drop_shell()
            raise DisconnectedUnexpected(f"Connection lost while staging the script: {e}", disconnected=False) from e
        return shell

    async def _stage(self, shell: RemoteShell, step: RunStep, paths: GuestPaths) -> None:
        """Upload the script (and stdin content) before anything runs."""
        status = await shell.exec(f"mkdir -p {shlex.quote(self.state_dir)}", timeout=self.command_timeout)
        if status != 0:
            raise StepFailure("STAGING_FAILED", f"Could not create {self.state_dir} on the guest (exit {status})")
        await shell.upload(step.script.encode(), paths.script, mode=0o755)
        if step.stdin_file is not None:
            await shell.upload(step.stdin_file, paths.stdin)

    async def _recover_exit_code(self, system: str, paths: GuestPaths) -> int | None:
        shell = await self._reconnect(system)
        if shell is None:
            raise DisconnectedUnexpected(f"Guest did not come back within {self.reconnect_timeout:g}s")
        try:
            text = await shell.read_text(paths.status)
        except ConnectionLost as e:
            await self._drop_shell()
            raise DisconnectedUnexpected(f"Connection lost while reading the exit status: {e.message}") from e
        if text is None:
            return None
        try:
            return int(text.strip())
        except ValueError:
            logger.warning("exit_status_unparsable system=%s path=%s content=%r", system, paths.status, text)
            return None

    async def _ensure_shell(self, system: str) -> RemoteShell:
        if self._shell is not None and self._shell.connected:
            return self._shell
        await self._drop_shell()
        shell = await self._reconnect(system)
        if shell is None:
            raise DisconnectedUnexpected(
                f"Guest was not reachable within {self.reconnect_timeout:g}s", disconnected=False
            )
        return shell

    async def _reconnect(self, system: str) -> RemoteShell | None:
        """Connect within the reconnect grace period; ``None`` when it elapses."""
        if self._endpoint is None:
            raise RuntimeError("StepExecutor.run() has not been called")
        deadline = self._clock() + self.reconnect_timeout
        attempts = 0
        while True:
            attempts += 1
            shell = self.shell_factory(self._endpoint)
            try:
                await shell.connect()
            except ConnectionLost as e:
                logger.debug("connect_retry system=%s attempt=%d error=%s", system, attempts, e.message)
            else:
                self._shell = shell
                if attempts > 1:
                    logger.info("reconnected system=%s attempts=%d", system, attempts)
                return shell
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            await self._sleep(min(self.poll_interval, remaining))

    async def _drop_shell(self) -> None:
        shell, self._shell = self._shell, None
        if shell is not None:
            await shell.close()
