from __future__ import annotations

import os
from dataclasses import dataclass, replace
from functools import lru_cache
from pathlib import Path

from vtb.exceptions import ConfigError


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_path(name: str, default: str | None) -> Path | None:
    raw = os.getenv(name, default)
    if not raw:
        return None
    return Path(raw)


@dataclass(frozen=True, slots=True)
class Settings:
    images_dir: Path
    work_dir: Path
    qemu_img: str
    qemu_system_prefix: str
    vm_memory: str
    vm_cpus: int
    firmware_amd64: Path | None
    firmware_arm64: Path | None
    boot_timeout_seconds: float
    poll_interval_seconds: float
    reconnect_timeout_seconds: float
    script_timeout_seconds: float
    connect_timeout_seconds: float
    shutdown_grace_seconds: float
    shutdown_command: str
    guest_state_dir: str
    keep_disks: bool = False
    max_parallel: int = 0
    log_level: str = "INFO"

    def validate(self) -> None:
        timeouts = {
            "VTB_BOOT_TIMEOUT": self.boot_timeout_seconds,
            "VTB_POLL_INTERVAL": self.poll_interval_seconds,
            "VTB_RECONNECT_TIMEOUT": self.reconnect_timeout_seconds,
            "VTB_SCRIPT_TIMEOUT": self.script_timeout_seconds,
            "VTB_CONNECT_TIMEOUT": self.connect_timeout_seconds,
            "VTB_SHUTDOWN_GRACE": self.shutdown_grace_seconds,
        }
        for name, value in timeouts.items():
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        if self.vm_cpus < 1:
            raise ConfigError(f"VTB_VM_CPUS must be at least 1, got {self.vm_cpus}")
        if self.max_parallel < 0:
            raise ConfigError(f"VTB_MAX_PARALLEL must not be negative, got {self.max_parallel}")
        if not self.guest_state_dir.startswith("/"):
            raise ConfigError("VTB_GUEST_STATE_DIR must be an absolute guest path")

    def resolve(self, project_dir: Path) -> Settings:
        """Anchor relative directories at the project directory."""
        return replace(
            self,
            images_dir=project_dir / self.images_dir,
            work_dir=project_dir / self.work_dir,
        )

    def with_overrides(self, **changes: object) -> Settings:
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    try:
        return Settings(
            images_dir=Path(os.getenv("VTB_IMAGES_DIR", "build/images")),
            work_dir=Path(os.getenv("VTB_WORK_DIR", ".vtb/runs")),
            qemu_img=os.getenv("VTB_QEMU_IMG", "qemu-img"),
            qemu_system_prefix=os.getenv("VTB_QEMU_SYSTEM_PREFIX", "qemu-system-"),
            vm_memory=os.getenv("VTB_VM_MEMORY", "2G"),
            vm_cpus=int(os.getenv("VTB_VM_CPUS", "2")),
            firmware_amd64=_env_path("VTB_FIRMWARE_AMD64", None),
            firmware_arm64=_env_path("VTB_FIRMWARE_ARM64", "/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"),
            boot_timeout_seconds=float(os.getenv("VTB_BOOT_TIMEOUT", "300")),
            poll_interval_seconds=float(os.getenv("VTB_POLL_INTERVAL", "5")),
            reconnect_timeout_seconds=float(os.getenv("VTB_RECONNECT_TIMEOUT", "300")),
            script_timeout_seconds=float(os.getenv("VTB_SCRIPT_TIMEOUT", "3600")),
            connect_timeout_seconds=float(os.getenv("VTB_CONNECT_TIMEOUT", "10")),
            shutdown_grace_seconds=float(os.getenv("VTB_SHUTDOWN_GRACE", "30")),
            shutdown_command=os.getenv("VTB_SHUTDOWN_COMMAND", "poweroff"),
            guest_state_dir=os.getenv("VTB_GUEST_STATE_DIR", "/var/tmp/vtb"),
            keep_disks=_env_bool("VTB_KEEP_DISKS", False),
            max_parallel=int(os.getenv("VTB_MAX_PARALLEL", "0")),
            log_level=os.getenv("VTB_LOG_LEVEL", "INFO").upper(),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid environment configuration: {e}") from e
