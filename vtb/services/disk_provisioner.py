from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from vtb.exceptions import CommandExecutionError, ProvisioningError
from vtb.models import TestSystem
from vtb.services.qemu_executor import QemuCommandExecutor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OverlayDisk:
    """Copy-on-write working disk owned by exactly one system run."""
    system: str
    path: Path
    base_image: Path
    size_bytes: int
    released: bool = False
    retained: bool = False


class DiskProvisioner:
    """Create and reclaim qcow2 overlays on top of read-only base images."""

    def __init__(self, run_dir: Path, executor: QemuCommandExecutor, *, keep_disks: bool = False) -> None:
        self.run_dir = run_dir
        self.executor = executor
        self.keep_disks = keep_disks

    def _overlay_path(self, system: str) -> Path:
        return self.run_dir / f"{system}.qcow2"

    async def provision(self, system: str, base_image: Path, size_bytes: int) -> OverlayDisk:
        """Create an overlay of ``size_bytes`` backed by ``base_image``."""
        if not base_image.is_file():
            raise ProvisioningError(f"Base image {base_image} does not exist")
        try:
            info = await self.executor.image_info(base_image)
        except CommandExecutionError as e:
            raise ProvisioningError(f"Could not inspect base image {base_image}: {e.message}") from e
        if size_bytes < info.virtual_size:
            raise ProvisioningError(
                f"Disk size {size_bytes} is smaller than the base image ({info.virtual_size} bytes)"
            )

        overlay = self._overlay_path(system)
        try:
            await self.executor.create_overlay(base_image, info.format, overlay, size_bytes)
        except CommandExecutionError as e:
            overlay.unlink(missing_ok=True)
            raise ProvisioningError(f"Could not create overlay for {system!r}: {e.message}") from e
        except BaseException:
            overlay.unlink(missing_ok=True)
            raise

        logger.info("overlay_created system=%s path=%s size=%d", system, overlay, size_bytes)
        return OverlayDisk(system=system, path=overlay, base_image=base_image, size_bytes=size_bytes)

    def release(self, disk: OverlayDisk) -> None:
        """Reclaim the overlay's delta storage. Safe to call more than once."""
        if disk.released:
            return
        disk.released = True
        if self.keep_disks:
            disk.retained = True
            logger.info("overlay_retained system=%s path=%s", disk.system, disk.path)
            return
        try:
            disk.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("overlay_release_failed system=%s path=%s error=%s", disk.system, disk.path, e)
            return
        logger.info("overlay_released system=%s path=%s", disk.system, disk.path)

    @asynccontextmanager
    async def overlay_disk(self, system: TestSystem) -> AsyncIterator[OverlayDisk]:
        disk = await self.provision(system.name, system.image, system.disk_size)
        try:
            yield disk
        finally:
            self.release(disk)
