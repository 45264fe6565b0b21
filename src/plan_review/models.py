from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model speaking camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SuccessCriteria(WireModel):
    automated: list[str] = Field(default_factory=list)
    manual: list[str] = Field(default_factory=list)


class TestingStrategy(WireModel):
    __test__ = False

    unit: list[str] = Field(default_factory=list)
    integration: list[str] = Field(default_factory=list)
    manual: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.unit or self.integration or self.manual)


class Phase(WireModel):
    number: int
    name: str
    description: str = ""
    tasks: list[str] = Field(default_factory=list)
    success_criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)
    implementation_notes: str | None = None


class Proposal(WireModel):
    """Generated implementation plan awaiting human review."""

    title: str
    overview: str
    current_state: str | None = None
    desired_end_state: str | None = None
    out_of_scope: list[str] = Field(default_factory=list)
    phases: list[Phase]
    testing_strategy: TestingStrategy | None = None
    references: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must be non-empty")
        return value.strip()

    @model_validator(mode="after")
    def _unique_phase_numbers(self) -> "Proposal":
        seen: set[int] = set()
        for phase in self.phases:
            if phase.number in seen:
                raise ValueError(f"Duplicate phase number: {phase.number}")
            seen.add(phase.number)
        return self

    def ordered_phases(self) -> list[Phase]:
        return sorted(self.phases, key=lambda phase: phase.number)

    def phase_numbers(self) -> list[int]:
        return [phase.number for phase in self.ordered_phases()]

    def phase(self, number: int) -> Phase | None:
        for phase in self.phases:
            if phase.number == number:
                return phase
        return None


class DecisionKind(str, Enum):
    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"


class Decision(WireModel):
    """Reviewer verdict captured by the review page.

    An empty ``selected_phases`` means "all phases"; the expansion happens in
    ``effective_phases`` at rendering time, not at submission.
    """

    decision: DecisionKind
    selected_phases: list[int] = Field(default_factory=list)
    priority: str = "medium"
    approach: str = "balanced"
    requirements: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    notes: str = ""

    @field_validator("selected_phases")
    @classmethod
    def _dedupe_phases(cls, value: list[int]) -> list[int]:
        return list(dict.fromkeys(value))

    @property
    def is_approval(self) -> bool:
        return self.decision in (DecisionKind.APPROVE, DecisionKind.MODIFY)

    def effective_phases(self, proposal: Proposal) -> list[int]:
        if not self.selected_phases:
            return proposal.phase_numbers()
        return list(self.selected_phases)


class ReviewEndReason(str, Enum):
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    LAUNCH_FAILED = "launch_failed"
    SERVER_ERROR = "server_error"


class ReviewOutcome(BaseModel):
    """Terminal result of one review session."""

    reason: ReviewEndReason
    decision: Decision | None = None
    error: str | None = None
    url: str | None = None

    @property
    def abandoned(self) -> bool:
        return self.reason in (ReviewEndReason.CANCELLED, ReviewEndReason.TIMEOUT, ReviewEndReason.ABORTED)


class PlanStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    ABANDONED = "abandoned"
    PENDING = "pending"
    FAILED = "failed"


class FailureKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    CONFIGURATION = "configuration"
    GENERATION = "generation"
    LAUNCH = "launch"
    SERVER = "server"
    PERSISTENCE = "persistence"


class PlanResult(BaseModel):
    """Structured result handed back to whoever asked for a plan."""

    status: PlanStatus
    message: str
    proposal: Proposal | None = None
    decision: Decision | None = None
    saved_path: str | None = None
    failure: FailureKind | None = None
    review_url: str | None = None
