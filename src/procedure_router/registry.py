from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from .models import Procedure, ProcedureSource, RequestClassification, StepDefinition, VcsPlatform

logger = logging.getLogger(__name__)


def _step(name: str, instruction_ref: str, description: str, **flags: object) -> StepDefinition:
    return StepDefinition(name=name, instruction_ref=instruction_ref, description=description, **flags)


# Instruction refs are resolved by the agent runner; "primary" is resolved from
# the issue's role label or the user's own input.
BUILT_IN_STEPS: Mapping[str, StepDefinition] = MappingProxyType(
    {
        "primary": _step("primary", "primary", "Main work execution phase"),
        "debugger-reproduction": _step(
            "debugger-reproduction",
            "subroutines/debugger-reproduction.md",
            "Reproduce bug and perform root cause analysis",
        ),
        "get-approval": _step(
            "get-approval",
            "subroutines/get-approval.md",
            "Request user approval before proceeding",
            single_turn=True,
            requires_approval=True,
        ),
        "debugger-fix": _step(
            "debugger-fix",
            "subroutines/debugger-fix.md",
            "Implement minimal fix based on approved reproduction",
        ),
        "verifications": _step(
            "verifications",
            "subroutines/verifications.md",
            "Run tests, linting, and type checking",
            uses_validation_loop=True,
        ),
        "validation-fixer": _step(
            "validation-fixer",
            "subroutines/validation-fixer.md",
            "Fix validation failures from the verifications step",
        ),
        "git-commit": _step("git-commit", "subroutines/git-commit.md", "Stage, commit, and push changes to remote"),
        "gh-pr": _step("gh-pr", "subroutines/gh-pr.md", "Create or update GitHub Pull Request"),
        "az-pr-create": _step(
            "az-pr-create",
            "subroutines/az-pr-create.md",
            "Create draft PR in Azure DevOps and update changelog",
        ),
        "az-pr-finalize": _step(
            "az-pr-finalize",
            "subroutines/az-pr-finalize.md",
            "Update and finalize Azure DevOps Pull Request",
        ),
        "changelog-update": _step(
            "changelog-update",
            "subroutines/changelog-update.md",
            "Update changelog (only if changelog files exist)",
        ),
        "concise-summary": _step(
            "concise-summary",
            "subroutines/concise-summary.md",
            "Brief summary for simple requests",
            single_turn=True,
            suppress_output_posting=True,
            disallow_all_tools=True,
        ),
        "verbose-summary": _step(
            "verbose-summary",
            "subroutines/verbose-summary.md",
            "Detailed summary with implementation details",
            single_turn=True,
            suppress_output_posting=True,
            disallow_all_tools=True,
        ),
        "question-investigation": _step(
            "question-investigation",
            "subroutines/question-investigation.md",
            "Gather information needed to answer a question",
        ),
        "question-answer": _step(
            "question-answer",
            "subroutines/question-answer.md",
            "Format final answer to user question",
            single_turn=True,
            suppress_output_posting=True,
            disallow_all_tools=True,
        ),
        "coding-activity": _step(
            "coding-activity",
            "subroutines/coding-activity.md",
            "Implementation phase for code changes (no git/gh operations)",
        ),
        "preparation": _step(
            "preparation",
            "subroutines/preparation.md",
            "Analyze request to determine if clarification or planning is needed",
        ),
        "plan-summary": _step(
            "plan-summary",
            "subroutines/plan-summary.md",
            "Present clarifying questions or implementation plan",
            single_turn=True,
            suppress_output_posting=True,
            disallow_all_tools=True,
        ),
        "user-testing": _step("user-testing", "subroutines/user-testing.md", "Perform testing as requested by the user"),
        "user-testing-summary": _step(
            "user-testing-summary",
            "subroutines/user-testing-summary.md",
            "Summary of user testing session results",
            single_turn=True,
            suppress_output_posting=True,
            disallow_all_tools=True,
        ),
        "release-execution": _step(
            "release-execution",
            "subroutines/release-execution.md",
            "Execute release process using project skill or gather release info from the user",
        ),
        "release-summary": _step(
            "release-summary",
            "subroutines/release-summary.md",
            "Summary of the release process",
            single_turn=True,
            suppress_output_posting=True,
            disallow_all_tools=True,
        ),
    }
)


def _procedure(name: str, description: str, step_names: list[str]) -> Procedure:
    return Procedure(name=name, description=description, steps=tuple(BUILT_IN_STEPS[step] for step in step_names))


def built_in_procedures() -> list[Procedure]:
    return [
        _procedure(
            "simple-question",
            "For questions or requests that don't modify the codebase",
            ["question-investigation", "question-answer"],
        ),
        _procedure(
            "documentation-edit",
            "For documentation/markdown edits that don't require verification",
            ["primary", "git-commit", "gh-pr", "concise-summary"],
        ),
        _procedure(
            "full-development",
            "For code changes requiring full verification and PR creation",
            ["coding-activity", "verifications", "changelog-update", "git-commit", "gh-pr", "concise-summary"],
        ),
        _procedure(
            "debugger-full",
            "Full debugging workflow with reproduction, fix, and verification",
            [
                "debugger-reproduction",
                "debugger-fix",
                "verifications",
                "changelog-update",
                "git-commit",
                "gh-pr",
                "concise-summary",
            ],
        ),
        _procedure(
            "orchestrator-full",
            "Full orchestration workflow with decomposition and delegation to sub-agents",
            ["primary", "concise-summary"],
        ),
        _procedure(
            "plan-mode",
            "Planning mode for requests needing clarification or implementation planning",
            ["preparation", "plan-summary"],
        ),
        _procedure(
            "user-testing",
            "User-driven testing workflow for manual testing sessions",
            ["user-testing", "user-testing-summary"],
        ),
        _procedure(
            "release",
            "Release workflow that invokes project release skill or asks user for release info",
            ["release-execution", "release-summary"],
        ),
        _procedure(
            "full-development-azure",
            "For code changes requiring full verification and PR creation (Azure DevOps)",
            ["coding-activity", "verifications", "az-pr-create", "git-commit", "az-pr-finalize", "concise-summary"],
        ),
        _procedure(
            "documentation-edit-azure",
            "For documentation/markdown edits that don't require verification (Azure DevOps)",
            ["primary", "git-commit", "az-pr-create", "az-pr-finalize", "concise-summary"],
        ),
        _procedure(
            "debugger-full-azure",
            "Full debugging workflow with reproduction, fix, and verification (Azure DevOps)",
            [
                "debugger-reproduction",
                "debugger-fix",
                "verifications",
                "az-pr-create",
                "git-commit",
                "az-pr-finalize",
                "concise-summary",
            ],
        ),
    ]


CLASSIFICATION_TO_PROCEDURE: Mapping[RequestClassification, str] = MappingProxyType(
    {
        RequestClassification.QUESTION: "simple-question",
        RequestClassification.DOCUMENTATION: "documentation-edit",
        RequestClassification.TRANSIENT: "simple-question",
        RequestClassification.PLANNING: "plan-mode",
        RequestClassification.CODE: "full-development",
        RequestClassification.DEBUGGER: "debugger-full",
        RequestClassification.ORCHESTRATOR: "orchestrator-full",
        RequestClassification.USER_TESTING: "user-testing",
        RequestClassification.RELEASE: "release",
    }
)

PLATFORM_VARIANTS: Mapping[VcsPlatform, Mapping[str, str]] = MappingProxyType(
    {
        VcsPlatform.AZURE_DEVOPS: MappingProxyType(
            {
                "full-development": "full-development-azure",
                "documentation-edit": "documentation-edit-azure",
                "debugger-full": "debugger-full-azure",
            }
        ),
    }
)

DEFAULT_CLASSIFICATION = RequestClassification.CODE


class ProcedureRegistry:
    """Immutable name-to-procedure table with classification and platform lookups.

    Build one with :func:`build_default_registry` at process start and pass it
    to consumers. External definitions are layered on with
    :meth:`with_overrides`, which returns a new registry and leaves the
    receiver untouched.
    """

    def __init__(
        self,
        procedures: Iterable[Procedure],
        *,
        classification_map: Mapping[RequestClassification, str] = CLASSIFICATION_TO_PROCEDURE,
        platform_variants: Mapping[VcsPlatform, Mapping[str, str]] = PLATFORM_VARIANTS,
        sources: Mapping[str, ProcedureSource] | None = None,
    ) -> None:
        table: dict[str, Procedure] = {}
        for procedure in procedures:
            table[procedure.name] = procedure
        if not table:
            raise ValueError("ProcedureRegistry requires at least one procedure")

        missing = [item.value for item in RequestClassification if item not in classification_map]
        if missing:
            raise ValueError(f"Classification map missing entries for: {', '.join(missing)}")
        unknown = sorted({name for name in classification_map.values() if name not in table})
        if unknown:
            raise ValueError(f"Classification map references unknown procedures: {', '.join(unknown)}")

        self._procedures: Mapping[str, Procedure] = MappingProxyType(table)
        self._classification_map = MappingProxyType(dict(classification_map))
        self._platform_variants = platform_variants
        resolved_sources = dict(sources or {})
        self._sources: Mapping[str, ProcedureSource] = MappingProxyType(
            {name: resolved_sources.get(name, ProcedureSource.BUILT_IN) for name in table}
        )

    def get(self, name: str) -> Procedure | None:
        return self._procedures.get(name)

    def all(self) -> frozenset[Procedure]:
        return frozenset(self._procedures.values())

    def names(self) -> list[str]:
        """Registered procedure names, sorted."""
        return sorted(self._procedures)

    def __contains__(self, name: object) -> bool:
        return name in self._procedures

    def __len__(self) -> int:
        return len(self._procedures)

    def source_of(self, name: str) -> ProcedureSource | None:
        """Whether ``name`` is built in or came from an external definition; ``None`` if unknown."""
        return self._sources.get(name)

    def classification_to_procedure_name(self, classification: RequestClassification | str) -> str:
        """Base procedure name for ``classification``, before any platform substitution."""
        return self._classification_map[RequestClassification(classification)]

    def platform_variant(self, base_name: str, platform: VcsPlatform | str | None = None) -> str:
        """Return the platform-specific substitute for ``base_name``.

        Falls back to ``base_name`` when the platform is unset, unknown, the
        default (GitHub), or has no registered variant for this procedure.
        """
        if platform is None:
            return base_name
        try:
            resolved = VcsPlatform(platform)
        except ValueError:
            logger.debug("Unknown platform %r; using procedure '%s' unchanged", platform, base_name)
            return base_name
        if resolved == VcsPlatform.GITHUB:
            return base_name
        variant = self._platform_variants.get(resolved, {}).get(base_name)
        if variant and variant in self._procedures:
            return variant
        return base_name

    def procedure_for_classification(
        self,
        classification: RequestClassification | str,
        platform: VcsPlatform | str | None = None,
    ) -> Procedure:
        name = self.platform_variant(self.classification_to_procedure_name(classification), platform)
        procedure = self.get(name)
        if procedure is None:
            raise KeyError(f"Procedure '{name}' not found in registry")
        return procedure

    def with_overrides(self, procedures: Mapping[str, Procedure] | Iterable[Procedure]) -> "ProcedureRegistry":
        """Return a registry where ``procedures`` replace same-named entries wholesale."""
        incoming = list(procedures.values()) if isinstance(procedures, Mapping) else list(procedures)
        merged = dict(self._procedures)
        sources = dict(self._sources)
        for procedure in incoming:
            if procedure.name in merged and sources.get(procedure.name) == ProcedureSource.BUILT_IN:
                logger.info("External procedure '%s' overrides built-in definition", procedure.name)
            merged[procedure.name] = procedure
            sources[procedure.name] = ProcedureSource.EXTERNAL
        return ProcedureRegistry(
            merged.values(),
            classification_map=self._classification_map,
            platform_variants=self._platform_variants,
            sources=sources,
        )


def build_default_registry() -> ProcedureRegistry:
    """Construct the registry holding every built-in procedure."""
    return ProcedureRegistry(built_in_procedures())
