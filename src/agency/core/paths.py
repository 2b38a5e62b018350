import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

APP_NAME = "agency"


@dataclass(frozen=True)
class AgencyDirs:
    data_dir: Path
    config_dir: Path
    cache_dir: Path


def is_darwin() -> bool:
    return sys.platform == "darwin"


def _resolve(
    env: Mapping[str, str],
    home: Path,
    *,
    override_var: str,
    darwin_parts: tuple,
    xdg_var: str,
    fallback_parts: tuple,
    darwin: bool,
) -> Path:
    override = env.get(override_var)
    if override:
        return Path(override)
    if darwin:
        return home.joinpath(*darwin_parts, APP_NAME)
    xdg = env.get(xdg_var)
    if xdg:
        return Path(xdg) / APP_NAME
    return home.joinpath(*fallback_parts, APP_NAME)


def resolve_dirs(
    env: Mapping[str, str], home: Path, *, darwin: Optional[bool] = None
) -> AgencyDirs:
    darwin = is_darwin() if darwin is None else darwin
    return AgencyDirs(
        data_dir=_resolve(
            env,
            home,
            override_var="AGENCY_DATA_DIR",
            darwin_parts=("Library", "Application Support"),
            xdg_var="XDG_DATA_HOME",
            fallback_parts=(".local", "share"),
            darwin=darwin,
        ),
        config_dir=_resolve(
            env,
            home,
            override_var="AGENCY_CONFIG_DIR",
            darwin_parts=("Library", "Preferences"),
            xdg_var="XDG_CONFIG_HOME",
            fallback_parts=(".config",),
            darwin=darwin,
        ),
        cache_dir=_resolve(
            env,
            home,
            override_var="AGENCY_CACHE_DIR",
            darwin_parts=("Library", "Caches"),
            xdg_var="XDG_CACHE_HOME",
            fallback_parts=(".cache",),
            darwin=darwin,
        ),
    )


DEFAULT_SETUP_TIMEOUT_SECONDS = 600
DEFAULT_LOCK_STALE_AFTER_SECONDS = 2 * 60 * 60


@dataclass(frozen=True)
class AgencySettings:
    """Per-invocation settings resolved once by the CLI and passed down."""

    cwd: Path
    dirs: AgencyDirs
    setup_timeout_seconds: float = DEFAULT_SETUP_TIMEOUT_SECONDS
    lock_stale_after_seconds: float = DEFAULT_LOCK_STALE_AFTER_SECONDS

    @property
    def data_dir(self) -> Path:
        return self.dirs.data_dir

    @classmethod
    def resolve(
        cls,
        *,
        env: Mapping[str, str],
        home: Path,
        cwd: Path,
        darwin: Optional[bool] = None,
    ) -> "AgencySettings":
        return cls(cwd=cwd, dirs=resolve_dirs(env, home, darwin=darwin))
