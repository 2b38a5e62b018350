from dataclasses import dataclass
from typing import List, Sequence

from .errors import AgencyError, ErrorCode


@dataclass(frozen=True)
class RunRef:
    repo_id: str
    run_id: str
    broken: bool = False


class RunNotFoundError(AgencyError):
    def __init__(self, run_id: str) -> None:
        super().__init__(
            ErrorCode.RUN_NOT_FOUND,
            f"run not found: {run_id}",
            details={"run_id": run_id},
        )
        self.run_id = run_id


class AmbiguousRunIdError(AgencyError):
    def __init__(self, run_id: str, candidates: Sequence[RunRef]) -> None:
        listed = ", ".join(
            f"{ref.run_id} (repo {ref.repo_id})" for ref in candidates
        )
        super().__init__(
            ErrorCode.RUN_ID_AMBIGUOUS,
            f"run id {run_id!r} is ambiguous; matches: {listed}",
            details={"run_id": run_id},
        )
        self.run_id = run_id
        self.candidates: List[RunRef] = list(candidates)


def _sorted_refs(refs: Sequence[RunRef]) -> List[RunRef]:
    return sorted(refs, key=lambda ref: (ref.run_id, ref.repo_id))


def resolve_run_ref(value: str, refs: Sequence[RunRef]) -> RunRef:
    """Resolve a full or prefix run id against ``refs``.

    An exact id match wins over prefix matches. Ambiguous results carry their
    candidates sorted by run id, then repo id. Broken runs are not filtered.
    """
    needle = (value or "").strip()
    if not needle:
        raise RunNotFoundError(needle)

    exact = [ref for ref in refs if ref.run_id == needle]
    if len(exact) == 1:
        return exact[0]
    if len(exact) > 1:
        raise AmbiguousRunIdError(needle, _sorted_refs(exact))

    matches = [ref for ref in refs if ref.run_id.startswith(needle)]
    if not matches:
        raise RunNotFoundError(needle)
    if len(matches) == 1:
        return matches[0]
    raise AmbiguousRunIdError(needle, _sorted_refs(matches))
