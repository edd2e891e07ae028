"""
Workflow Model.

In-memory representation of a test workflow: the systems to boot and the ordered
steps to run against each of them. Loaded from a TOML file and validated with
pydantic; the resulting objects are frozen.
"""

from __future__ import annotations

import re
import tomllib
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator, model_validator

from vtb.exceptions import ConfigError

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgtp]?)(?:i?b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4, "p": 1024**5}


def parse_size(value: str | int) -> int:
    """Parse a human-readable size such as ``"40G"`` into bytes (binary multiples)."""
    if isinstance(value, bool):
        raise ValueError("size must be a string or an integer")
    if isinstance(value, int):
        size = value
    else:
        match = _SIZE_RE.match(value)
        if match is None:
            raise ValueError(f"invalid size {value!r}")
        number, unit = match.groups()
        size = int(float(number) * _SIZE_UNITS[unit.lower()])
    if size <= 0:
        raise ValueError(f"size must be positive, got {value!r}")
    return size


def _resolve(path: Path, info: ValidationInfo) -> Path:
    project_dir = (info.context or {}).get("project_dir")
    if project_dir is not None and not path.is_absolute():
        return Path(project_dir) / path
    return path


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class SSHConfig(_Frozen):
    private_key: Path = Field(alias="private-key")
    user: str = Field(default="root", min_length=1)

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: Path, info: ValidationInfo) -> Path:
        path = _resolve(v, info)
        if (info.context or {}).get("check_files", True) and not path.is_file():
            raise ValueError(f"private key {path} does not exist")
        return path


class TestSystem(_Frozen):
    # Used as a file name inside the run directory.
    name: str = Field(pattern=r"^[A-Za-z0-9._-]+$")
    system: str = Field(min_length=1)
    image: Path
    disk_size: int = Field(alias="disk-size")
    architecture: Literal["amd64", "arm64"] = "amd64"
    ssh: SSHConfig

    @model_validator(mode="before")
    @classmethod
    def fill_defaults(cls, data: Any, info: ValidationInfo) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        system = data.get("system")
        if isinstance(system, str):
            data.setdefault("name", system)
            if "image" not in data:
                images_dir = Path((info.context or {}).get("images_dir", "build/images"))
                data["image"] = images_dir / f"{system}.img"
        return data

    @field_validator("image")
    @classmethod
    def resolve_image(cls, v: Path, info: ValidationInfo) -> Path:
        return _resolve(v, info)

    @field_validator("disk_size", mode="before")
    @classmethod
    def validate_disk_size(cls, v: Any) -> int:
        return parse_size(v)


class WaitStep(_Frozen):
    action: Literal["wait"]
    duration: float = Field(ge=0)
    description: str | None = None


class RunStep(_Frozen):
    action: Literal["run"]
    script: str
    may_disconnect: bool = Field(default=False, alias="may-disconnect")
    may_fail: bool = Field(default=False, alias="may-fail")
    stdin_file: Path | None = Field(default=None, alias="stdin-file")
    description: str | None = None

    @field_validator("script")
    @classmethod
    def validate_script(cls, v: str) -> str:
        if not v.lstrip().startswith("#!"):
            raise ValueError("script must start with an interpreter directive (#!)")
        return v.lstrip()

    @field_validator("stdin_file")
    @classmethod
    def validate_stdin_file(cls, v: Path | None, info: ValidationInfo) -> Path | None:
        if v is None:
            return None
        path = _resolve(v, info)
        if (info.context or {}).get("check_files", True) and not path.is_file():
            raise ValueError(f"stdin file {path} does not exist")
        return path


TestStep = Annotated[Union[WaitStep, RunStep], Field(discriminator="action")]


class TestWorkflow(_Frozen):
    systems: tuple[TestSystem, ...] = Field(min_length=1)
    steps: tuple[TestStep, ...] = ()

    @model_validator(mode="after")
    def validate_unique_names(self) -> TestWorkflow:
        seen: set[str] = set()
        for system in self.systems:
            if system.name in seen:
                raise ValueError(f"duplicate system name {system.name!r}")
            seen.add(system.name)
        return self


def describe_step(step: WaitStep | RunStep) -> str:
    if step.description:
        return step.description
    if isinstance(step, WaitStep):
        return f"wait {step.duration:g}s"
    body = [line.strip() for line in step.script.splitlines()[1:] if line.strip()]
    return body[0] if body else "run script"


def _format_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(x) for x in (err.get('loc') or []))}: {err.get('msg')}"
        for err in exc.errors()
    )


def parse_workflow(
    data: dict[str, Any],
    *,
    project_dir: Path,
    images_dir: Path | None = None,
    check_files: bool = True,
) -> TestWorkflow:
    """Validate an already decoded workflow table."""
    context = {
        "project_dir": project_dir,
        "images_dir": images_dir if images_dir is not None else Path("build/images"),
        "check_files": check_files,
    }
    try:
        return TestWorkflow.model_validate(data, context=context)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e


def load_workflow(
    path: Path,
    *,
    project_dir: Path,
    images_dir: Path | None = None,
) -> TestWorkflow:
    """Read and validate a workflow file."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read workflow {path}: {e}") from e
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Could not parse workflow {path}: {e}") from e
    return parse_workflow(data, project_dir=project_dir, images_dir=images_dir)
