"""Run pipeline: a fixed sequence of six steps over a shared state.

The run id is generated before any step runs so it is always available for
error reporting. Steps run in order and the first failure stops the run.
Domain errors pass through unchanged; anything else is wrapped once into
``E_INTERNAL`` with the failing step recorded under ``details["step"]``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple

from .errors import AgencyError, ErrorCode
from .logging_utils import log_event
from .naming import new_run_id

logger = logging.getLogger(__name__)

STEP_CHECK_REPO_SAFE = "CheckRepoSafe"
STEP_LOAD_AGENCY_CONFIG = "LoadAgencyConfig"
STEP_CREATE_WORKTREE = "CreateWorktree"
STEP_WRITE_META = "WriteMeta"
STEP_RUN_SETUP = "RunSetup"
STEP_START_TMUX = "StartTmux"


@dataclass
class RunPipelineOptions:
    title: str = ""
    runner: str = ""
    parent: str = ""
    attach: bool = False


@dataclass(frozen=True)
class PipelineWarning:
    code: str
    message: str


@dataclass
class PipelineState:
    title: str = ""
    runner: str = ""
    parent: str = ""
    attach: bool = False

    run_id: str = ""

    repo_root: Optional[Path] = None
    repo_id: str = ""
    repo_key: str = ""
    origin_url: str = ""
    data_dir: Optional[Path] = None

    runner_cmd: str = ""
    setup_script: str = ""
    parent_branch: str = ""

    branch: str = ""
    worktree_path: Optional[Path] = None

    tmux_session_name: str = ""
    setup_log_path: Optional[Path] = None

    warnings: List[PipelineWarning] = field(default_factory=list)

    def warn(self, code: str, message: str) -> None:
        self.warnings.append(PipelineWarning(code=code, message=message))


class RunSteps(Protocol):
    def check_repo_safe(self, state: PipelineState) -> None: ...

    def load_agency_config(self, state: PipelineState) -> None: ...

    def create_worktree(self, state: PipelineState) -> None: ...

    def write_meta(self, state: PipelineState) -> None: ...

    def run_setup(self, state: PipelineState) -> None: ...

    def start_tmux(self, state: PipelineState) -> None: ...


@dataclass
class PipelineResult:
    run_id: str
    state: PipelineState
    error: Optional[AgencyError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def wrap_step_error(exc: Exception, step: str) -> AgencyError:
    if isinstance(exc, AgencyError):
        return exc
    return AgencyError.wrap(ErrorCode.INTERNAL, "internal error", exc, details={"step": step})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Pipeline:
    def __init__(
        self,
        steps: RunSteps,
        *,
        now: Callable[[], datetime] = _utc_now,
        run_id_factory: Callable[[datetime], str] = new_run_id,
    ) -> None:
        self.steps = steps
        self._now = now
        self._run_id_factory = run_id_factory

    def _ordered_steps(self) -> List[Tuple[str, Callable[[PipelineState], None]]]:
        return [
            (STEP_CHECK_REPO_SAFE, self.steps.check_repo_safe),
            (STEP_LOAD_AGENCY_CONFIG, self.steps.load_agency_config),
            (STEP_CREATE_WORKTREE, self.steps.create_worktree),
            (STEP_WRITE_META, self.steps.write_meta),
            (STEP_RUN_SETUP, self.steps.run_setup),
            (STEP_START_TMUX, self.steps.start_tmux),
        ]

    def run(self, opts: RunPipelineOptions) -> PipelineResult:
        state = PipelineState(
            title=opts.title,
            runner=opts.runner,
            parent=opts.parent,
            attach=opts.attach,
        )
        try:
            state.run_id = self._run_id_factory(self._now())
        except Exception as exc:
            error = AgencyError.wrap(ErrorCode.INTERNAL, "failed to generate run_id", exc)
            return PipelineResult(run_id="", state=state, error=error)

        for name, step in self._ordered_steps():
            log_event(logger, logging.DEBUG, "pipeline.step.start", run_id=state.run_id, step=name)
            try:
                step(state)
            except Exception as exc:
                error = wrap_step_error(exc, name)
                log_event(
                    logger,
                    logging.WARNING,
                    "pipeline.step.failed",
                    run_id=state.run_id,
                    step=name,
                    error_code=error.code.value,
                )
                return PipelineResult(run_id=state.run_id, state=state, error=error)
            log_event(logger, logging.DEBUG, "pipeline.step.done", run_id=state.run_id, step=name)

        log_event(logger, logging.INFO, "pipeline.completed", run_id=state.run_id)
        return PipelineResult(run_id=state.run_id, state=state)
