"""Derived run status.

A pure mapping from persisted run metadata plus a live local snapshot to a
single label. Precedence (first match wins):

  broken > merged > abandoned > failed > needs attention > ready for review
  > active (pr) > active > idle (pr) > idle
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .store import RunMeta

REPORT_NONEMPTY_THRESHOLD_BYTES = 64


class RunStatus(str, Enum):
    BROKEN = "broken"
    MERGED = "merged"
    ABANDONED = "abandoned"
    FAILED = "failed"
    NEEDS_ATTENTION = "needs attention"
    READY_FOR_REVIEW = "ready for review"
    ACTIVE_PR = "active (pr)"
    ACTIVE = "active"
    IDLE_PR = "idle (pr)"
    IDLE = "idle"


@dataclass(frozen=True)
class Snapshot:
    tmux_active: bool = False
    worktree_present: bool = False
    report_bytes: int = 0


@dataclass(frozen=True)
class Derived:
    status: RunStatus
    archived: bool
    report_nonempty: bool

    @property
    def label(self) -> str:
        return self.status.value


def derive_status(meta: Optional["RunMeta"], snapshot: Snapshot) -> Derived:
    report_bytes = max(snapshot.report_bytes, 0)
    report_nonempty = report_bytes >= REPORT_NONEMPTY_THRESHOLD_BYTES
    archived = not snapshot.worktree_present

    def result(status: RunStatus) -> Derived:
        return Derived(status=status, archived=archived, report_nonempty=report_nonempty)

    if meta is None:
        return result(RunStatus.BROKEN)
    if meta.archive is not None and meta.archive.merged_at:
        return result(RunStatus.MERGED)

    flags = meta.flags
    if flags is not None and flags.abandoned:
        return result(RunStatus.ABANDONED)
    if flags is not None and flags.setup_failed:
        return result(RunStatus.FAILED)
    if flags is not None and flags.needs_attention:
        return result(RunStatus.NEEDS_ATTENTION)

    has_pr = bool(meta.pr_number)
    if has_pr and meta.last_push_at and report_nonempty:
        return result(RunStatus.READY_FOR_REVIEW)
    if snapshot.tmux_active:
        return result(RunStatus.ACTIVE_PR if has_pr else RunStatus.ACTIVE)
    return result(RunStatus.IDLE_PR if has_pr else RunStatus.IDLE)
