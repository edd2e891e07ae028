"""
VM Session Manager.

Boots one QEMU virtual machine per test system on top of its overlay disk,
forwards a local TCP port to the guest's SSH daemon, waits for the guest to
accept authenticated connections and tears the machine down again.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, AsyncIterator, Callable

from vtb.config import Settings
from vtb.exceptions import BootTimeoutError, CommandExecutionError, ConnectionLost
from vtb.models import TestSystem
from vtb.services.disk_provisioner import OverlayDisk
from vtb.services.qemu_executor import QemuCommandExecutor
from vtb.services.remote_shell import RemoteShell, SSHEndpoint

logger = logging.getLogger(__name__)

ShellFactory = Callable[[SSHEndpoint], RemoteShell]


class VMState(Enum):
    BOOTING = "booting"
    READY = "ready"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    host: str = "127.0.0.1"
    ssh_port: int = 0

    @classmethod
    def allocate(cls, host: str = "127.0.0.1") -> NetworkConfig:
        """Pick a currently free local port for the SSH forward."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            return cls(host=host, ssh_port=sock.getsockname()[1])


@dataclass(slots=True)
class VMSession:
    """A running VM bound to exactly one overlay disk for its whole lifetime."""
    system: TestSystem
    disk: OverlayDisk
    endpoint: SSHEndpoint
    process: asyncio.subprocess.Process
    log_path: Path
    log_file: IO[bytes] | None = None
    state: VMState = VMState.BOOTING
    history: list[VMState] = field(default_factory=list)

    def transition(self, state: VMState) -> None:
        self.history.append(self.state)
        self.state = state
        logger.info("vm_state system=%s state=%s", self.system.name, state.value)

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None


class VMManager:
    def __init__(
        self,
        settings: Settings,
        executor: QemuCommandExecutor,
        shell_factory: ShellFactory,
        *,
        run_dir: Path,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.shell_factory = shell_factory
        self.run_dir = run_dir

    def build_command(self, system: TestSystem, disk: OverlayDisk, network: NetworkConfig) -> list[str]:
        if system.architecture == "arm64":
            cmd = [f"{self.settings.qemu_system_prefix}aarch64", "-machine", "virt", "-cpu", "max"]
            firmware = self.settings.firmware_arm64
        else:
            cmd = [f"{self.settings.qemu_system_prefix}x86_64", "-machine", "q35"]
            firmware = self.settings.firmware_amd64
        cmd += [
            "-accel", "kvm",
            "-accel", "tcg",
            "-m", self.settings.vm_memory,
            "-smp", str(self.settings.vm_cpus),
            "-nographic",
            "-drive", f"file={disk.path},format=qcow2,if=virtio",
            "-netdev", f"user,id=net0,hostfwd=tcp:{network.host}:{network.ssh_port}-:22",
            "-device", "virtio-net-pci,netdev=net0",
        ]
        if firmware is not None:
            cmd += ["-bios", str(firmware)]
        return cmd

    async def start(self, system: TestSystem, disk: OverlayDisk, network: NetworkConfig) -> VMSession:
        """Launch the VM process. The session starts in ``BOOTING``."""
        if disk.released:
            raise BootTimeoutError(f"Overlay disk for {system.name!r} was already released")
        log_path = self.run_dir / f"{system.name}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "wb")
        try:
            process = await self.executor.launch(self.build_command(system, disk, network), log_file)
        except CommandExecutionError as e:
            log_file.close()
            raise BootTimeoutError(f"Could not start VM for {system.name!r}: {e.message}") from e
        except BaseException:
            log_file.close()
            raise
        endpoint = SSHEndpoint(
            host=network.host,
            port=network.ssh_port,
            user=system.ssh.user,
            private_key=system.ssh.private_key,
        )
        logger.info(
            "vm_started system=%s pid=%s ssh=%s:%d log=%s",
            system.name,
            process.pid,
            network.host,
            network.ssh_port,
            log_path,
        )
        return VMSession(
            system=system,
            disk=disk,
            endpoint=endpoint,
            process=process,
            log_path=log_path,
            log_file=log_file,
        )

    async def wait_until_ready(self, session: VMSession, timeout: float | None = None) -> VMState:
        """Poll until the guest accepts an authenticated SSH connection."""
        timeout = timeout if timeout is not None else self.settings.boot_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempts = 0
        while True:
            if session.exited:
                raise BootTimeoutError(
                    f"VM for {session.system.name!r} exited with status {session.process.returncode} "
                    f"before becoming ready (see {session.log_path})"
                )
            attempts += 1
            shell = self.shell_factory(session.endpoint)
            try:
                await shell.connect()
            except ConnectionLost as e:
                logger.debug("vm_not_ready system=%s attempt=%d error=%s", session.system.name, attempts, e.message)
            else:
                await shell.close()
                session.transition(VMState.READY)
                logger.info("vm_ready system=%s attempts=%d", session.system.name, attempts)
                return session.state
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise BootTimeoutError(
                    f"VM for {session.system.name!r} did not accept SSH connections within {timeout:g}s"
                )
            await asyncio.sleep(min(self.settings.poll_interval_seconds, remaining))

    async def _request_poweroff(self, session: VMSession) -> None:
        shell = self.shell_factory(session.endpoint)
        try:
            await shell.connect()
            await shell.exec(self.settings.shutdown_command, timeout=self.settings.connect_timeout_seconds)
        except (ConnectionLost, TimeoutError) as e:
            # Expected when the guest goes down before answering.
            logger.debug("vm_poweroff_request system=%s error=%s", session.system.name, e)
        finally:
            await shell.close()

    async def _wait_exit(self, session: VMSession, timeout: float) -> bool:
        try:
            await asyncio.wait_for(session.process.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def force_kill(self, session: VMSession) -> None:
        if not session.exited:
            logger.warning("vm_force_kill system=%s pid=%s", session.system.name, session.process.pid)
            try:
                session.process.kill()
            except ProcessLookupError:
                pass

    def _finalize(self, session: VMSession) -> None:
        if session.log_file is not None:
            session.log_file.close()
            session.log_file = None
        if session.state is not VMState.TERMINATED:
            session.transition(VMState.TERMINATED)

    async def stop(self, session: VMSession) -> None:
        """
        Shut the VM down: guest-initiated first, then terminate, then kill.

        Never raises for ordinary failures; cancellation still kills the VM
        before propagating.
        """
        if session.state is VMState.TERMINATED:
            return
        session.transition(VMState.SHUTTING_DOWN)
        grace = self.settings.shutdown_grace_seconds
        try:
            if not session.exited:
                await self._request_poweroff(session)
                if not await self._wait_exit(session, grace):
                    logger.warning("vm_graceful_shutdown_timeout system=%s grace=%s", session.system.name, grace)
                    try:
                        session.process.terminate()
                    except ProcessLookupError:
                        pass
                    if not await self._wait_exit(session, grace):
                        self.force_kill(session)
                        await self._wait_exit(session, grace)
        except asyncio.CancelledError:
            self.force_kill(session)
            self._finalize(session)
            raise
        except Exception:
            logger.exception("vm_stop_failed system=%s", session.system.name)
            self.force_kill(session)
        self._finalize(session)
        logger.info("vm_stopped system=%s returncode=%s", session.system.name, session.process.returncode)

    async def kill(self, session: VMSession) -> None:
        """Stop the VM without asking the guest; used when the run is cancelled."""
        if session.state is VMState.TERMINATED:
            return
        session.transition(VMState.SHUTTING_DOWN)
        self.force_kill(session)
        try:
            await self._wait_exit(session, self.settings.shutdown_grace_seconds)
        finally:
            self._finalize(session)
        logger.info("vm_killed system=%s returncode=%s", session.system.name, session.process.returncode)

    @asynccontextmanager
    async def vm_session(
        self,
        system: TestSystem,
        disk: OverlayDisk,
        network: NetworkConfig | None = None,
    ) -> AsyncIterator[VMSession]:
        session = await self.start(system, disk, network or NetworkConfig.allocate())
        try:
            yield session
        except asyncio.CancelledError:
            await self.kill(session)
            raise
        finally:
            await self.stop(session)
