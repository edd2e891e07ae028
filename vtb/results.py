"""
Result Aggregator.

Step outcomes fold into a per-system result and per-system results fold into a
workflow result. Everything here is a pure value; nothing performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence


class StepState(Enum):
    """Terminal states of an executed step, plus ``PENDING`` for skipped ones."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"          # non-zero exit tolerated by may-fail
    UNVERIFIED = "unverified"  # exit status lost, tolerated by may-fail
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class StepOutcome:
    index: int
    action: str
    state: StepState
    exit_code: int | None = None
    disconnected: bool = False
    elapsed_seconds: float = 0.0
    reason: str | None = None
    message: str | None = None

    @property
    def fatal(self) -> bool:
        return self.state is StepState.FATAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "action": self.action,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "disconnected": self.disconnected,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "reason": self.reason,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class SystemResult:
    """
    Outcomes of one system run, in step order.

    ``outcomes`` holds exactly one entry per executed step. Steps after a fatal
    outcome (or all steps, when provisioning or boot failed) are listed in
    ``pending``. ``reason``/``message`` describe a system-level failure.
    """
    system: str
    outcomes: tuple[StepOutcome, ...] = ()
    pending: tuple[int, ...] = ()
    reason: str | None = None
    message: str | None = None

    @classmethod
    def from_outcomes(cls, system: str, outcomes: Sequence[StepOutcome], step_count: int) -> SystemResult:
        executed = len(outcomes)
        return cls(
            system=system,
            outcomes=tuple(outcomes),
            pending=tuple(range(executed, step_count)),
        )

    @classmethod
    def aborted(cls, system: str, step_count: int, *, reason: str, message: str) -> SystemResult:
        return cls(system=system, pending=tuple(range(step_count)), reason=reason, message=message)

    @property
    def passed(self) -> bool:
        return self.reason is None and all(not outcome.fatal for outcome in self.outcomes)

    def state_of(self, index: int) -> StepState:
        for outcome in self.outcomes:
            if outcome.index == index:
                return outcome.state
        return StepState.PENDING

    def first_fatal(self) -> StepOutcome | None:
        return next((outcome for outcome in self.outcomes if outcome.fatal), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "system": self.system,
            "passed": self.passed,
            "reason": self.reason,
            "message": self.message,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "pending": list(self.pending),
        }


@dataclass(frozen=True, slots=True)
class FailureSummary:
    system: str
    reason: str
    message: str
    step_index: int | None = None
    action: str | None = None

    def describe(self) -> str:
        if self.step_index is None:
            return f"system {self.system!r} failed: {self.reason}: {self.message}"
        return (
            f"system {self.system!r} failed at step {self.step_index} ({self.action}): "
            f"{self.reason}: {self.message}"
        )


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    systems: Mapping[str, SystemResult] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: Sequence[SystemResult]) -> WorkflowResult:
        return cls(systems={result.system: result for result in results})

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.systems.values())

    def first_failure(self) -> FailureSummary | None:
        for result in self.systems.values():
            if result.passed:
                continue
            if result.reason is not None:
                return FailureSummary(
                    system=result.system,
                    reason=result.reason,
                    message=result.message or "",
                )
            fatal = result.first_fatal()
            if fatal is not None:
                return FailureSummary(
                    system=result.system,
                    reason=fatal.reason or "FATAL",
                    message=fatal.message or "",
                    step_index=fatal.index,
                    action=fatal.action,
                )
        return None

    def exit_status(self) -> int:
        return 0 if self.passed else 1

    def summary_lines(self) -> list[str]:
        lines: list[str] = []
        for result in self.systems.values():
            verdict = "PASSED" if result.passed else "FAILED"
            counts: dict[str, int] = {}
            for outcome in result.outcomes:
                counts[outcome.state.value] = counts.get(outcome.state.value, 0) + 1
            if result.pending:
                counts[StepState.PENDING.value] = len(result.pending)
            detail = ", ".join(f"{state}={n}" for state, n in counts.items()) or "no steps"
            lines.append(f"{result.system}: {verdict} ({detail})")
        failure = self.first_failure()
        if failure is not None:
            lines.append(failure.describe())
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "systems": {name: result.to_dict() for name, result in self.systems.items()},
        }
