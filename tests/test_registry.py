import pytest

from procedure_router import (
    Procedure,
    ProcedureRegistry,
    ProcedureRouter,
    ProcedureSource,
    ProcedureStateMachine,
    RequestClassification,
    StepDefinition,
    VcsPlatform,
    build_default_registry,
)
from procedure_router.registry import BUILT_IN_STEPS, CLASSIFICATION_TO_PROCEDURE


def _procedure(name: str, *step_names: str) -> Procedure:
    steps = tuple(StepDefinition(name=step, instruction_ref=f"{step}.md", description=step) for step in step_names)
    return Procedure(name=name, description=f"{name} procedure", steps=steps)


def test_every_classification_resolves_to_a_registered_procedure() -> None:
    registry = build_default_registry()
    for classification in RequestClassification:
        procedure = registry.procedure_for_classification(classification)
        assert procedure.name == CLASSIFICATION_TO_PROCEDURE[classification]
        assert procedure.steps


def test_classification_map_matches_built_in_routing() -> None:
    registry = build_default_registry()
    assert registry.classification_to_procedure_name("question") == "simple-question"
    assert registry.classification_to_procedure_name("transient") == "simple-question"
    assert registry.classification_to_procedure_name("planning") == "plan-mode"
    assert registry.classification_to_procedure_name(RequestClassification.CODE) == "full-development"


def test_full_development_step_order() -> None:
    procedure = build_default_registry().get("full-development")
    assert procedure is not None
    assert procedure.step_names() == [
        "coding-activity",
        "verifications",
        "changelog-update",
        "git-commit",
        "gh-pr",
        "concise-summary",
    ]
    assert procedure.steps[1].uses_validation_loop is True


def test_platform_variant_substitutes_only_when_a_variant_exists() -> None:
    registry = build_default_registry()
    assert registry.platform_variant("full-development", VcsPlatform.AZURE_DEVOPS) == "full-development-azure"
    assert registry.platform_variant("debugger-full", "azure-devops") == "debugger-full-azure"
    assert registry.platform_variant("simple-question", "azure-devops") == "simple-question"
    assert registry.platform_variant("full-development", "github") == "full-development"
    assert registry.platform_variant("full-development", None) == "full-development"


def test_procedure_for_classification_applies_platform_variant() -> None:
    registry = build_default_registry()
    procedure = registry.procedure_for_classification("documentation", "azure-devops")
    assert procedure.name == "documentation-edit-azure"
    assert "az-pr-create" in procedure.step_names()


def test_unspecified_flags_stay_absent_on_built_in_steps() -> None:
    primary = BUILT_IN_STEPS["primary"]
    assert primary.single_turn is None
    assert primary.requires_approval is None
    assert primary.specified_flags() == {}
    summary = BUILT_IN_STEPS["concise-summary"]
    assert summary.specified_flags() == {
        "single_turn": True,
        "disallow_all_tools": True,
        "suppress_output_posting": True,
    }


def test_with_overrides_returns_new_registry_and_replaces_wholesale() -> None:
    registry = build_default_registry()
    replacement = _procedure("full-development", "only-step")
    merged = registry.with_overrides([replacement, _procedure("custom-flow", "a", "b")])

    assert merged.get("full-development") == replacement
    assert merged.source_of("full-development") == ProcedureSource.EXTERNAL
    assert merged.get("custom-flow") is not None
    assert registry.get("custom-flow") is None
    assert registry.source_of("full-development") == ProcedureSource.BUILT_IN
    assert len(registry.get("full-development").steps) == 6


def test_registry_rejects_incomplete_classification_map() -> None:
    procedures = build_default_registry().all()
    partial = {RequestClassification.CODE: "full-development"}
    with pytest.raises(ValueError, match="missing entries"):
        ProcedureRegistry(procedures, classification_map=partial)


def test_registry_rejects_map_pointing_at_unknown_procedure() -> None:
    mapping = {classification: "full-development" for classification in RequestClassification}
    with pytest.raises(ValueError, match="unknown procedures"):
        ProcedureRegistry([_procedure("something-else", "a")], classification_map=mapping)


def test_procedure_rejects_empty_and_duplicate_steps() -> None:
    with pytest.raises(ValueError):
        Procedure(name="empty", description="no steps", steps=())
    with pytest.raises(ValueError):
        _procedure("dupes", "same", "same")


def test_all_and_names_expose_every_built_in() -> None:
    registry = build_default_registry()
    assert len(registry.all()) == 11
    assert registry.names() == sorted(registry.names())
    assert "release" in registry


def test_unknown_platform_falls_back_to_base_name() -> None:
    registry = build_default_registry()
    assert registry.platform_variant("full-development", "gitlab") == "full-development"
    assert registry.procedure_for_classification("code", "gitlab").name == "full-development"


@pytest.mark.parametrize(
    "helper",
    [
        ProcedureRegistry.names,
        ProcedureRegistry.source_of,
        ProcedureRegistry.classification_to_procedure_name,
        ProcedureRegistry.platform_variant,
        Procedure.step_names,
        ProcedureStateMachine.clear,
        ProcedureRouter.load_errors,
    ],
)
def test_public_helpers_are_documented(helper) -> None:
    assert helper.__doc__ and helper.__doc__.strip()
