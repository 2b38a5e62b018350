"""Loading and validation of the per-repo ``agency.json``."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator

from .errors import AgencyError, ErrorCode
from .filesystem import FileSystem, RealFileSystem
from .utils import resolve_executable

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "agency.json"
CONFIG_VERSION = 1
KNOWN_RUNNERS = ("claude", "codex")


class DefaultsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    parent_branch: StrictStr = ""
    runner: StrictStr = ""


class ScriptsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    setup: StrictStr = ""
    verify: StrictStr = ""
    archive: StrictStr = ""


class AgencyConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = 0
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    scripts: ScriptsConfig = Field(default_factory=ScriptsConfig)
    runners: Dict[str, StrictStr] = Field(default_factory=dict)

    @field_validator("version", mode="before")
    @classmethod
    def _integral_version(cls, value: Any) -> int:
        if isinstance(value, bool):
            raise ValueError("version must be an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        raise ValueError("version must be an integer")


@dataclass
class ResolvedRunner:
    name: str
    command: str
    warnings: List[str] = field(default_factory=list)


def config_path(repo_root: Path) -> Path:
    return repo_root / CONFIG_FILE_NAME


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    if location:
        return f"{location}: {message}"
    return message


def parse_agency_config(text: str) -> AgencyConfig:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AgencyError(
            ErrorCode.INVALID_AGENCY_JSON, f"invalid json: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise AgencyError(
            ErrorCode.INVALID_AGENCY_JSON, "agency.json must contain a JSON object"
        )
    try:
        return AgencyConfig.model_validate(payload)
    except ValidationError as exc:
        raise AgencyError(
            ErrorCode.INVALID_AGENCY_JSON,
            f"invalid agency.json: {_describe_validation_error(exc)}",
        ) from exc


def load_agency_config(repo_root: Path, *, fs: Optional[FileSystem] = None) -> AgencyConfig:
    """Read and type-check ``<repo_root>/agency.json`` without semantic validation."""
    fs = fs or RealFileSystem()
    path = config_path(repo_root)
    try:
        text = fs.read_text(path)
    except FileNotFoundError as exc:
        raise AgencyError(
            ErrorCode.NO_AGENCY_JSON,
            "agency.json not found; create one at the repo root",
            details={"path": str(path)},
        ) from exc
    except OSError as exc:
        raise AgencyError(
            ErrorCode.NO_AGENCY_JSON,
            f"failed to read agency.json: {exc}",
            details={"path": str(path)},
        ) from exc
    return parse_agency_config(text)


def validate_agency_config(config: AgencyConfig) -> AgencyConfig:
    if config.version != CONFIG_VERSION:
        raise AgencyError(ErrorCode.INVALID_AGENCY_JSON, "version must be 1")
    required = (
        ("defaults.parent_branch", config.defaults.parent_branch),
        ("defaults.runner", config.defaults.runner),
        ("scripts.setup", config.scripts.setup),
    )
    for name, value in required:
        if not value:
            raise AgencyError(
                ErrorCode.INVALID_AGENCY_JSON, f"missing required field {name}"
            )
    for name, cmd in sorted(config.runners.items()):
        if not cmd:
            raise AgencyError(
                ErrorCode.INVALID_AGENCY_JSON,
                f"runners.{name} must be a non-empty string",
            )
        if any(ch.isspace() for ch in cmd):
            raise AgencyError(
                ErrorCode.INVALID_AGENCY_JSON,
                f"runners.{name} must be a single executable (no args); use a wrapper script",
            )
    return config


def resolve_runner(
    config: AgencyConfig,
    override: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> ResolvedRunner:
    """Pick the runner command: ``runners[name]`` > known runner on PATH."""
    name = (override or "").strip() or config.defaults.runner
    cmd = config.runners.get(name)
    if cmd:
        return ResolvedRunner(name=name, command=cmd)
    if name in KNOWN_RUNNERS:
        warnings: List[str] = []
        if resolve_executable(name, env=env) is None:
            warnings.append(f"runner {name!r} not found on PATH; the session may fail to start")
            logger.warning("Runner %s not found on PATH", name)
        return ResolvedRunner(name=name, command=name, warnings=warnings)
    raise AgencyError(
        ErrorCode.RUNNER_NOT_CONFIGURED,
        f'runner "{name}" not configured; set runners.{name} or choose claude/codex',
        details={"runner": name},
    )
