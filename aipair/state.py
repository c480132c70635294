from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

RunPhase = Literal["idle", "cycle_in_flight", "cycle_evaluated", "terminated"]
RunOutcome = Literal["success", "failure"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeSummary(BaseModel):
    """File-level changes attributed to one cycle."""
    last_change_time: datetime | None = None
    new_files: set[str] = Field(default_factory=set)
    deleted_files: set[str] = Field(default_factory=set)
    modified_files: set[str] = Field(default_factory=set)
    build_files: set[str] = Field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not (self.new_files or self.deleted_files or self.modified_files)

    def touched(self) -> set[str]:
        return self.new_files | self.deleted_files | self.modified_files


class TestResults(BaseModel):
    __test__ = False  # keep pytest from collecting this model
    passed: bool = False
    total_tests: int = 0
    failed_tests: set[str] = Field(default_factory=set)
    passed_tests: set[str] = Field(default_factory=set)
    errored_tests: set[str] = Field(default_factory=set)
    last_run_time: datetime | None = None


class BuildState(BaseModel):
    compiled_successfully: bool = False
    last_compile_time: datetime | None = None


class CycleRecord(BaseModel):
    """History entry for a single cycle attempt. Survives reset_cycle_state()."""
    cycle_number: int
    model: str
    started_at: datetime = Field(default_factory=_now)
    ended_at: datetime | None = None
    build_state: BuildState | None = None
    test_results: TestResults | None = None
    code_changes: ChangeSummary | None = None
    run_output: str = ""
    generation_error: str = ""
    timings: dict[str, datetime] = Field(default_factory=dict)

    def mark(self, event: str) -> None:
        """Stamp a timing event such as 'generation_start' or 'test_end'."""
        self.timings[event] = _now()


class CycleState(BaseModel):
    """
    Mutable record of one run.

    Cross-cycle history (hints, counters, change summaries, cycle records)
    lives next to the transient results of the cycle in flight. The
    orchestrator is the only writer; observers get snapshot() copies.
    """

    # Cross-cycle history
    accumulated_hints: list[str] = Field(default_factory=list)
    generation_cycles: int = 0
    changes_per_cycle: list[ChangeSummary] = Field(default_factory=list)
    cycles: list[CycleRecord] = Field(default_factory=list)

    # Current cycle
    last_run_output: str | None = None
    test_results: TestResults = Field(default_factory=TestResults)
    build_state: BuildState = Field(default_factory=BuildState)
    code_changes: ChangeSummary = Field(default_factory=ChangeSummary)
    cycle_start_time: datetime | None = None

    # Run status
    phase: RunPhase = "idle"
    outcome: RunOutcome | None = None
    active_model: str = ""
    escalated: bool = False

    # -- Hints ---------------------------------------------------------------

    def add_hint(self, hint: str | None) -> None:
        if hint:
            self.accumulated_hints.append(hint)

    def clear_hints(self) -> None:
        self.accumulated_hints = []

    # -- Counters / timing ---------------------------------------------------

    def increment_generation_cycles(self) -> None:
        self.generation_cycles += 1

    def set_cycle_start_time(self) -> None:
        self.cycle_start_time = _now()

    # -- Changes -------------------------------------------------------------

    def record_changes(self, summary: ChangeSummary) -> None:
        self.changes_per_cycle.append(summary)
        self.code_changes = summary
        if self.current_cycle is not None:
            self.current_cycle.code_changes = summary

    # -- Cycle records -------------------------------------------------------

    @property
    def current_cycle(self) -> CycleRecord | None:
        if self.cycles and self.cycles[-1].ended_at is None:
            return self.cycles[-1]
        return None

    @property
    def previous_cycle(self) -> CycleRecord | None:
        finished = [c for c in self.cycles if c.ended_at is not None]
        return finished[-1] if finished else None

    def start_cycle_record(self, model: str) -> CycleRecord:
        record = CycleRecord(cycle_number=len(self.cycles) + 1, model=model)
        self.cycles.append(record)
        return record

    def finish_cycle_record(self) -> None:
        record = self.current_cycle
        if record is None:
            return
        record.build_state = self.build_state.model_copy(deep=True)
        record.test_results = self.test_results.model_copy(deep=True)
        record.run_output = self.last_run_output or ""
        record.ended_at = _now()

    # -- Resets --------------------------------------------------------------

    def reset_cycle_state(self) -> None:
        """Clear the per-cycle results. History and counters are untouched."""
        self.test_results = TestResults()
        self.build_state = BuildState()
        self.last_run_output = None

    def reset_state(self) -> None:
        """Reinitialize every field, as if freshly constructed."""
        for name, field in type(self).model_fields.items():
            setattr(self, name, field.get_default(call_default_factory=True))

    # -- Observers -----------------------------------------------------------

    def snapshot(self) -> "CycleState":
        return self.model_copy(deep=True)

    def to_message_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
