from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .canonical import to_canonical_json


class RequestClassification(str, Enum):
    QUESTION = "question"
    DOCUMENTATION = "documentation"
    TRANSIENT = "transient"
    PLANNING = "planning"
    CODE = "code"
    DEBUGGER = "debugger"
    ORCHESTRATOR = "orchestrator"
    USER_TESTING = "user-testing"
    RELEASE = "release"


class ProcedureSource(str, Enum):
    BUILT_IN = "built-in"
    EXTERNAL = "external"


class SelectionMode(str, Enum):
    LABEL = "label"
    DIRECT = "direct"
    CLASSIFICATION = "classification"


class VcsPlatform(str, Enum):
    GITHUB = "github"
    AZURE_DEVOPS = "azure-devops"


STEP_FLAG_FIELDS: tuple[str, ...] = (
    "single_turn",
    "uses_validation_loop",
    "max_iterations",
    "disallow_all_tools",
    "disallowed_tools",
    "requires_approval",
    "suppress_output_posting",
    "skip_output_posting",
)


class StepDefinition(BaseModel):
    """One executable unit of a procedure.

    Behavioral flags are ``None`` when the source never specified them, which
    keeps "not specified" distinguishable from an explicit ``False``.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    instruction_ref: str = Field(min_length=1)
    description: str
    single_turn: bool | None = None
    uses_validation_loop: bool | None = None
    max_iterations: int | None = Field(default=None, ge=1, le=10)
    disallow_all_tools: bool | None = None
    disallowed_tools: frozenset[str] | None = None
    requires_approval: bool | None = None
    suppress_output_posting: bool | None = None
    skip_output_posting: bool | None = None

    def specified_flags(self) -> dict[str, Any]:
        """Return only the behavioral flags that carry a value."""
        return {name: getattr(self, name) for name in STEP_FLAG_FIELDS if getattr(self, name) is not None}


class Procedure(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str
    steps: tuple[StepDefinition, ...]

    @field_validator("steps")
    @classmethod
    def _steps_non_empty_and_unique(cls, steps: tuple[StepDefinition, ...]) -> tuple[StepDefinition, ...]:
        if not steps:
            raise ValueError("procedure must contain at least one step")
        seen: set[str] = set()
        for step in steps:
            if step.name in seen:
                raise ValueError(f"duplicate step name within procedure: {step.name}")
            seen.add(step.name)
        return steps

    def step_names(self) -> list[str]:
        """Step names in execution order."""
        return [step.name for step in self.steps]


class SubroutineReference(BaseModel):
    """Externally authored step entry (snake_case file form)."""

    model_config = ConfigDict(extra="ignore")

    name: str
    prompt_file: str
    description: str | None = None
    single_turn: bool | None = None
    validation_loop: bool | None = None
    max_iterations: int | None = None
    disallow_tools: bool | None = None
    disallowed_tools: list[str] | None = None
    requires_approval: bool | None = None
    suppress_thought_posting: bool | None = None
    skip_linear_post: bool | None = None


class WorkflowTriggers(BaseModel):
    model_config = ConfigDict(extra="ignore")

    classifications: list[RequestClassification] | None = None
    labels: list[str] | None = None
    keywords: list[str] | None = None
    examples: list[str] | None = None


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str
    triggers: WorkflowTriggers | None = None
    priority: int = 0
    subroutines: list[SubroutineReference]

    @property
    def trigger_labels(self) -> list[str]:
        if self.triggers is None or not self.triggers.labels:
            return []
        return list(self.triggers.labels)

    @property
    def fingerprint(self) -> str:
        canonical = to_canonical_json(self.model_dump(mode="json", exclude_none=True))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class WorkflowCollection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: str | None = None
    workflows: list[WorkflowDefinition] = Field(default_factory=list)


class ExternalSessionRef(BaseModel):
    """Identifier of the runner session that executed a step."""

    model_config = ConfigDict(frozen=True)

    runner: str
    session_id: str


class StepHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_name: str
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    external_session_ref: ExternalSessionRef | None = None


class SessionProcedureState(BaseModel):
    procedure_name: str
    current_step_index: int = Field(default=0, ge=0)
    step_history: list[StepHistoryEntry] = Field(default_factory=list)


class AgentSession(BaseModel):
    """Minimal session record the state machine drives."""

    session_id: str
    runner_kind: str = "claude"
    procedure_state: SessionProcedureState | None = None


class WorkflowSelectionDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    chosen_name: str
    procedure: Procedure
    selection_mode: SelectionMode
    inferred_classification: RequestClassification
    reasoning: str


class ValidationResult(BaseModel):
    """Structured verdict emitted by a checks step."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    passed: bool = Field(validation_alias=AliasChoices("pass", "passed"))
    failures: list[str] = Field(default_factory=list)
    summary: str | None = None


class ValidationLoopState(BaseModel):
    iteration_count: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=3, ge=1)
    last_result: ValidationResult | None = None


class SchemaValidationResult(BaseModel):
    valid: bool
    errors: list[str] | None = None


class DirectoryParseResult(BaseModel):
    collection: WorkflowCollection = Field(default_factory=WorkflowCollection)
    parsed_files: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
