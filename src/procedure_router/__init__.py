from importlib.metadata import PackageNotFoundError, version

from .loader import GitClient, GitSourceError, WorkflowLoader
from .models import (
    AgentSession,
    DirectoryParseResult,
    ExternalSessionRef,
    Procedure,
    ProcedureSource,
    RequestClassification,
    SchemaValidationResult,
    SelectionMode,
    SessionProcedureState,
    StepDefinition,
    StepHistoryEntry,
    SubroutineReference,
    ValidationLoopState,
    ValidationResult,
    VcsPlatform,
    WorkflowCollection,
    WorkflowDefinition,
    WorkflowSelectionDecision,
    WorkflowTriggers,
)
from .parser import WorkflowParser, WorkflowSchemaError, WorkflowStructureError
from .prompts import IssueContext, build_classification_prompt
from .registry import ProcedureRegistry, build_default_registry
from .router import ProcedureRouter
from .runners import GeminiRoutingRunner, OpenAIRoutingRunner, RoutingRunner, RoutingRunnerError, build_routing_runner
from .selector import WorkflowSelector, infer_classification
from .settings import RouterSettings
from .state_machine import ProcedureStateError, ProcedureStateMachine
from .validation_loop import (
    StepExecutor,
    ValidationLoop,
    ValidationLoopController,
    ValidationLoopOutcome,
    ValidationParseError,
)


def get_version() -> str:
    try:
        return version("procedure-router")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AgentSession",
    "DirectoryParseResult",
    "ExternalSessionRef",
    "GeminiRoutingRunner",
    "GitClient",
    "GitSourceError",
    "IssueContext",
    "OpenAIRoutingRunner",
    "Procedure",
    "ProcedureRegistry",
    "ProcedureRouter",
    "ProcedureSource",
    "ProcedureStateError",
    "ProcedureStateMachine",
    "RequestClassification",
    "RouterSettings",
    "RoutingRunner",
    "RoutingRunnerError",
    "SchemaValidationResult",
    "SelectionMode",
    "SessionProcedureState",
    "StepDefinition",
    "StepExecutor",
    "StepHistoryEntry",
    "SubroutineReference",
    "ValidationLoop",
    "ValidationLoopController",
    "ValidationLoopOutcome",
    "ValidationLoopState",
    "ValidationParseError",
    "ValidationResult",
    "VcsPlatform",
    "WorkflowCollection",
    "WorkflowDefinition",
    "WorkflowLoader",
    "WorkflowParser",
    "WorkflowSchemaError",
    "WorkflowSelectionDecision",
    "WorkflowSelector",
    "WorkflowStructureError",
    "WorkflowTriggers",
    "build_classification_prompt",
    "build_default_registry",
    "build_routing_runner",
    "get_version",
    "infer_classification",
]
