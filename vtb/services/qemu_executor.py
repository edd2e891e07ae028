from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from vtb.exceptions import CommandExecutionError


@dataclass(frozen=True, slots=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True, slots=True)
class ImageInfo:
    format: str
    virtual_size: int


class QemuCommandExecutor:
    """Async wrapper around the ``qemu-img`` and ``qemu-system-*`` binaries."""

    def __init__(self, qemu_img: str = "qemu-img", *, timeout_seconds: float = 120) -> None:
        self.qemu_img = qemu_img
        self.timeout_seconds = timeout_seconds
        self._logger = logging.getLogger(__name__)

    async def _run(self, cmd: list[str], timeout_seconds: float | None = None) -> CommandResult:
        """Execute a short-lived command with piped output and a timeout."""
        self._logger.info("qemu_exec cmd=%s", cmd)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CommandExecutionError(f"Command not found: {cmd[0]}") from e
        except OSError as e:
            raise CommandExecutionError(f"Could not run command '{' '.join(cmd)}': {e}") from e
        try:
            stdout_b, stderr_b = await asyncio.wait_for(
                process.communicate(), timeout=timeout_seconds or self.timeout_seconds
            )
        except (TimeoutError, asyncio.CancelledError):
            process.kill()
            await asyncio.shield(process.wait())
            raise

        stdout = stdout_b.decode(errors="replace")
        stderr = stderr_b.decode(errors="replace")
        self._logger.info("qemu_exit code=%s", process.returncode)
        return CommandResult(stdout=stdout, stderr=stderr, exit_code=process.returncode or 0)

    def _raise_for_failure(self, result: CommandResult, fallback: str) -> None:
        message = result.stderr.strip() or result.stdout.strip() or fallback
        raise CommandExecutionError(f"{fallback} (exit {result.exit_code}): {message}")

    async def image_info(self, image: Path) -> ImageInfo:
        """Read format and virtual size of a disk image."""
        cmd = [self.qemu_img, "info", "--output=json", str(image)]
        result = await self._run(cmd)
        if result.exit_code != 0:
            self._raise_for_failure(result, "qemu-img info failed")
        try:
            data: dict[str, Any] = json.loads(result.stdout)
            return ImageInfo(format=str(data["format"]), virtual_size=int(data["virtual-size"]))
        except (ValueError, KeyError, TypeError) as e:
            raise CommandExecutionError(f"Could not parse qemu-img info output for {image}: {e}") from e

    async def create_overlay(self, base: Path, base_format: str, overlay: Path, size_bytes: int) -> CommandResult:
        """Create a qcow2 overlay backed by ``base``; the base is only read."""
        overlay.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.qemu_img,
            "create",
            "-f",
            "qcow2",
            "-F",
            base_format,
            "-b",
            str(base.resolve()),
            str(overlay),
            str(size_bytes),
        ]
        result = await self._run(cmd)
        if result.exit_code != 0:
            self._raise_for_failure(result, "qemu-img create failed")
        return result

    async def launch(self, cmd: list[str], log_file: IO[bytes]) -> asyncio.subprocess.Process:
        """Start a long-running process with its console redirected to ``log_file``."""
        self._logger.info("qemu_launch cmd=%s", cmd)
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise CommandExecutionError(f"Command not found: {cmd[0]}") from e
        except OSError as e:
            raise CommandExecutionError(f"Could not run command '{' '.join(cmd)}': {e}") from e
