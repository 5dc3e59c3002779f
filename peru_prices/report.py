"""Per-target outcomes and the immutable run report.

The RunRecorder collects exactly one final outcome per target while the
pipeline runs. finalize() fills in anything that never finished (deadline,
abort) as skipped, derives the overall status and freezes everything into
a RunReport, which is the single source of truth for what a run did.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from peru_prices.common.exceptions import RecordValidationError

logger = logging.getLogger(__name__)


class TargetStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NO_DATA = "no_data"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    ABORTED = "aborted"


# Error kinds recorded for targets that never reached a final outcome.
DEADLINE_EXCEEDED = "DeadlineExceeded"
RUN_ABORTED = "RunAborted"
UNEXPECTED = "Unexpected"


@dataclass(frozen=True)
class Rejection:
    """A candidate record the normalizer refused."""

    kind: str
    message: str
    position: int | None = None

    @classmethod
    def from_error(cls, error: RecordValidationError) -> Rejection:
        return cls(error.kind.value, error.message, error.position)


@dataclass(frozen=True)
class TargetOutcome:
    """What happened to one target.

    Attributes:
        target_id: The target.
        status: Final status of the target.
        attempts: Fetch attempts made.
        extracted: Candidate records extracted.
        validated: Records that passed validation.
        written: Rows added to the store.
        superseded: Rows replaced under the overwrite policy.
        unchanged: Records identical to a stored row.
        conflicts: Keys rejected by the reject policy.
        rejected: Candidates rejected by validation.
        error_kind: Classified error for failed, no_data and skipped targets.
        error_message: Human-readable error detail.
    """

    target_id: str
    status: TargetStatus
    attempts: int = 0
    extracted: int = 0
    validated: int = 0
    written: int = 0
    superseded: int = 0
    unchanged: int = 0
    conflicts: tuple[tuple[str, str, str], ...] = ()
    rejected: tuple[Rejection, ...] = ()
    error_kind: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["conflicts"] = [list(key) for key in self.conflicts]
        data["rejected"] = [asdict(r) for r in self.rejected]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TargetOutcome:
        return cls(
            target_id=data["target_id"],
            status=TargetStatus(data["status"]),
            attempts=data.get("attempts", 0),
            extracted=data.get("extracted", 0),
            validated=data.get("validated", 0),
            written=data.get("written", 0),
            superseded=data.get("superseded", 0),
            unchanged=data.get("unchanged", 0),
            conflicts=tuple(tuple(key) for key in data.get("conflicts", [])),
            rejected=tuple(Rejection(**r) for r in data.get("rejected", [])),
            error_kind=data.get("error_kind"),
            error_message=data.get("error_message"),
        )


def overall_status(
    outcomes: Iterable[TargetOutcome],
    fail_threshold: float | None = None,
    aborted: bool = False,
) -> RunStatus:
    """Derive the run status from per-target outcomes.

    - aborted: a fatal storage error stopped the run
    - success: every target succeeded, or there were no targets
    - failed: no target succeeded, or the share of failed targets is above
      ``fail_threshold``
    - partial_success: anything else
    """
    if aborted:
        return RunStatus.ABORTED
    outcomes = list(outcomes)
    if not outcomes:
        return RunStatus.SUCCESS
    succeeded = sum(1 for o in outcomes if o.status is TargetStatus.SUCCEEDED)
    if succeeded == len(outcomes):
        return RunStatus.SUCCESS
    if succeeded == 0:
        return RunStatus.FAILED
    failed = sum(1 for o in outcomes if o.status is TargetStatus.FAILED)
    if fail_threshold is not None and failed / len(outcomes) > fail_threshold:
        return RunStatus.FAILED
    return RunStatus.PARTIAL_SUCCESS


@dataclass(frozen=True)
class RunReport:
    run_id: str
    environment: str
    started_at: datetime
    finished_at: datetime
    merge_policy: str
    outcomes: tuple[TargetOutcome, ...]
    status: RunStatus

    @property
    def totals(self) -> dict[str, int]:
        totals = {
            "targets": len(self.outcomes),
            "attempts": 0,
            "extracted": 0,
            "validated": 0,
            "written": 0,
            "superseded": 0,
            "unchanged": 0,
            "conflicts": 0,
            "rejected": 0,
        }
        for status in TargetStatus:
            totals[status.value] = 0
        for outcome in self.outcomes:
            totals[outcome.status.value] += 1
            totals["attempts"] += outcome.attempts
            totals["extracted"] += outcome.extracted
            totals["validated"] += outcome.validated
            totals["written"] += outcome.written
            totals["superseded"] += outcome.superseded
            totals["unchanged"] += outcome.unchanged
            totals["conflicts"] += len(outcome.conflicts)
            totals["rejected"] += len(outcome.rejected)
        return totals

    def outcome(self, target_id: str) -> TargetOutcome:
        for outcome in self.outcomes:
            if outcome.target_id == target_id:
                return outcome
        raise KeyError(target_id)

    @property
    def succeeded(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL_SUCCESS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "environment": self.environment,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "merge_policy": self.merge_policy,
            "status": self.status.value,
            "totals": self.totals,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunReport:
        return cls(
            run_id=data["run_id"],
            environment=data["environment"],
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=datetime.fromisoformat(data["finished_at"]),
            merge_policy=data["merge_policy"],
            outcomes=tuple(
                TargetOutcome.from_dict(o) for o in data["outcomes"]
            ),
            status=RunStatus(data["status"]),
        )

    def summary_lines(self) -> list[str]:
        """Human-readable summary, one line per target plus totals."""
        elapsed = (self.finished_at - self.started_at).total_seconds()
        totals = self.totals
        lines = [
            f"Run {self.run_id} ({self.environment}): {self.status.value}",
            f"Finished in {elapsed:.1f}s ({totals['written']} items written)",
        ]
        for o in self.outcomes:
            line = (
                f"  {o.target_id}: {o.status.value} attempts={o.attempts} "
                f"extracted={o.extracted} validated={o.validated} "
                f"written={o.written}"
            )
            if o.error_kind:
                line += f" error={o.error_kind}"
            lines.append(line)
        lines.append(
            "Totals: "
            + " ".join(
                f"{key}={totals[key]}"
                for key in (
                    "targets",
                    "succeeded",
                    "failed",
                    "no_data",
                    "skipped",
                    "written",
                    "rejected",
                    "conflicts",
                )
            )
        )
        return lines


def load_report(path: Path | str) -> RunReport:
    with Path(path).open(encoding="utf-8") as f:
        return RunReport.from_dict(json.load(f))


@dataclass
class RunRecorder:
    """Collects final target outcomes while a run is in progress.

    The first outcome recorded for a target is final; later ones are
    ignored with a warning.
    """

    run_id: str
    environment: str
    started_at: datetime
    merge_policy: str
    target_ids: list[str]
    _outcomes: dict[str, TargetOutcome] = field(default_factory=dict)

    def record(self, outcome: TargetOutcome) -> None:
        if outcome.target_id in self._outcomes:
            logger.warning(
                f"Ignoring second outcome for {outcome.target_id}",
                extra={"target_id": outcome.target_id},
            )
            return
        self._outcomes[outcome.target_id] = outcome

    def is_final(self, target_id: str) -> bool:
        return target_id in self._outcomes

    def skip_remaining(self, error_kind: str, message: str) -> None:
        """Mark every target without an outcome as skipped."""
        for target_id in self.target_ids:
            if target_id not in self._outcomes:
                self._outcomes[target_id] = TargetOutcome(
                    target_id=target_id,
                    status=TargetStatus.SKIPPED,
                    error_kind=error_kind,
                    error_message=message,
                )

    def finalize(
        self,
        finished_at: datetime,
        fail_threshold: float | None = None,
        aborted: bool = False,
    ) -> RunReport:
        self.skip_remaining(
            RUN_ABORTED if aborted else UNEXPECTED, "No outcome recorded"
        )
        outcomes = tuple(self._outcomes[t] for t in self.target_ids)
        return RunReport(
            run_id=self.run_id,
            environment=self.environment,
            started_at=self.started_at,
            finished_at=finished_at,
            merge_policy=self.merge_policy,
            outcomes=outcomes,
            status=overall_status(outcomes, fail_threshold, aborted),
        )
