import asyncio
import time
from collections.abc import Sequence
from pathlib import Path

import pytest
from langchain_core.messages import AIMessage

from procedure_router import (
    Procedure,
    ProcedureRouter,
    RequestClassification,
    RoutingRunnerError,
    SelectionMode,
    StepDefinition,
    WorkflowDefinition,
    WorkflowLoader,
    WorkflowSelector,
    build_default_registry,
    infer_classification,
)
from procedure_router.runners import ChatModelRoutingRunner, normalize_reply


class FakeRunner:
    """Scripted routing runner used in place of a chat model."""

    def __init__(
        self,
        *,
        classification: str = "question",
        selection: str = "dev",
        classify_error: Exception | None = None,
        select_error: Exception | None = None,
    ) -> None:
        self.classification = classification
        self.selection = selection
        self.classify_error = classify_error
        self.select_error = select_error
        self.classify_calls: list[str] = []
        self.select_calls: list[list[str]] = []

    async def classify(self, request_text: str, timeout: float) -> RequestClassification:
        self.classify_calls.append(request_text)
        if self.classify_error is not None:
            raise self.classify_error
        return RequestClassification(self.classification)

    async def select_direct(
        self,
        request_text: str,
        candidates: Sequence[WorkflowDefinition],
        valid_names: Sequence[str],
        timeout: float,
    ) -> str:
        self.select_calls.append(list(valid_names))
        if self.select_error is not None:
            raise self.select_error
        return self.selection


class SlowModel:
    async def ainvoke(self, messages):
        await asyncio.sleep(5)
        return AIMessage(content="code")


class ReplyModel:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.messages = None

    async def ainvoke(self, messages):
        self.messages = messages
        return AIMessage(content=self.reply)


def _definition(name: str, labels: list[str], priority: int = 0, classifications: list[str] | None = None):
    triggers: dict = {"labels": labels}
    if classifications:
        triggers["classifications"] = classifications
    return WorkflowDefinition.model_validate(
        {
            "name": name,
            "description": f"{name} workflow",
            "priority": priority,
            "triggers": triggers,
            "subroutines": [{"name": "work", "prompt_file": f"{name}.md"}],
        }
    )


def _procedure(name: str) -> Procedure:
    step = StepDefinition(name="work", instruction_ref=f"{name}.md", description="work")
    return Procedure(name=name, description=f"{name} workflow", steps=(step,))


@pytest.fixture()
def registry():
    return build_default_registry().with_overrides([_procedure("debug"), _procedure("dev")])


def test_label_match_picks_highest_priority(registry) -> None:
    definitions = [_definition("debug", ["bug"], priority=15), _definition("dev", ["feature"], priority=10)]
    runner = FakeRunner()
    decision = asyncio.run(WorkflowSelector(registry, runner).select("Crash on save", ["bug"], definitions))

    assert decision.chosen_name == "debug"
    assert decision.selection_mode == SelectionMode.LABEL
    assert decision.procedure.name == "debug"
    assert "bug" in decision.reasoning
    assert runner.select_calls == []
    assert runner.classify_calls == []


def test_label_match_is_case_insensitive(registry) -> None:
    definitions = [_definition("debug", ["bug"], priority=15)]
    decision = asyncio.run(WorkflowSelector(registry, FakeRunner()).select("x", ["BUG"], definitions))
    assert decision.chosen_name == "debug"
    assert decision.selection_mode == SelectionMode.LABEL


def test_label_match_prefers_priority_among_multiple_matches(registry) -> None:
    definitions = [_definition("dev", ["bug"], priority=10), _definition("debug", ["Bug"], priority=15)]
    decision = asyncio.run(WorkflowSelector(registry, FakeRunner()).select("x", ["bug"], definitions))
    assert decision.chosen_name == "debug"


def test_label_match_ties_keep_input_order(registry) -> None:
    definitions = [_definition("dev", ["bug"], priority=5), _definition("debug", ["bug"], priority=5)]
    decision = asyncio.run(WorkflowSelector(registry, FakeRunner()).select("x", ["bug"], definitions))
    assert decision.chosen_name == "dev"


def test_unregistered_label_match_falls_through_to_direct(registry) -> None:
    definitions = [_definition("ghost", ["bug"], priority=50), _definition("dev", ["feature"])]
    runner = FakeRunner(selection="dev")
    decision = asyncio.run(WorkflowSelector(registry, runner).select("x", ["bug"], definitions))
    assert decision.chosen_name == "dev"
    assert decision.selection_mode == SelectionMode.DIRECT


def test_direct_selection_vocabulary_includes_registry_names(registry) -> None:
    definitions = [_definition("dev", ["feature"], classifications=["documentation"])]
    runner = FakeRunner(selection="dev")
    decision = asyncio.run(WorkflowSelector(registry, runner).select("Add docs", [], definitions))

    assert decision.selection_mode == SelectionMode.DIRECT
    assert decision.inferred_classification == RequestClassification.DOCUMENTATION
    vocabulary = runner.select_calls[0]
    assert vocabulary[0] == "dev"
    assert "full-development" in vocabulary
    assert len(vocabulary) == len(set(vocabulary))


def test_direct_selection_timeout_falls_back_to_classification(registry) -> None:
    definitions = [_definition("dev", ["feature"])]
    runner = FakeRunner(classification="question", select_error=RoutingRunnerError("runner timed out after 10s"))
    decision = asyncio.run(WorkflowSelector(registry, runner).select("How does X work?", None, definitions))

    assert decision is not None
    assert decision.selection_mode == SelectionMode.CLASSIFICATION
    assert decision.chosen_name == "simple-question"
    assert "timed out" in decision.reasoning


def test_direct_selection_of_unknown_name_falls_back(registry) -> None:
    definitions = [_definition("dev", ["feature"])]
    runner = FakeRunner(selection="does-not-exist", classification="code")
    decision = asyncio.run(WorkflowSelector(registry, runner).select("x", [], definitions))
    assert decision.selection_mode == SelectionMode.CLASSIFICATION
    assert decision.chosen_name == "full-development"


def test_no_definitions_skips_direct_selection(registry) -> None:
    runner = FakeRunner(classification="planning")
    decision = asyncio.run(WorkflowSelector(registry, runner).select("Help with auth?", ["bug"], []))
    assert runner.select_calls == []
    assert decision.chosen_name == "plan-mode"
    assert decision.inferred_classification == RequestClassification.PLANNING


def test_classification_failure_defaults_to_code(registry) -> None:
    runner = FakeRunner(classify_error=RuntimeError("transport down"))
    decision = asyncio.run(WorkflowSelector(registry, runner).determine_routine("anything"))
    assert decision.chosen_name == "full-development"
    assert decision.inferred_classification == RequestClassification.CODE
    assert "transport down" in decision.reasoning


def test_classification_applies_platform_variant(registry) -> None:
    runner = FakeRunner(classify_error=RuntimeError("boom"))
    selector = WorkflowSelector(registry, runner, platform="azure-devops")
    decision = asyncio.run(selector.select("anything"))
    assert decision.chosen_name == "full-development-azure"

    runner = FakeRunner(classification="debugger")
    decision = asyncio.run(WorkflowSelector(registry, runner).select("x", platform="azure-devops"))
    assert decision.chosen_name == "debugger-full-azure"


def test_unknown_platform_uses_base_procedure(registry) -> None:
    selector = WorkflowSelector(registry, FakeRunner(classification="code"))
    decision = asyncio.run(selector.select("fix it", platform="gitlab"))
    assert decision.chosen_name == "full-development"
    assert decision.selection_mode == SelectionMode.CLASSIFICATION

    failing = FakeRunner(classify_error=RuntimeError("boom"))
    decision = asyncio.run(WorkflowSelector(registry, failing, platform="gitlab").select("fix it"))
    assert decision.chosen_name == "full-development"
    assert "boom" in decision.reasoning


class DeadlineIgnoringRunner:
    """Runner that sleeps past any timeout it is handed."""

    def __init__(self, delay: float) -> None:
        self.delay = delay

    async def classify(self, request_text: str, timeout: float) -> RequestClassification:
        await asyncio.sleep(self.delay)
        return RequestClassification.QUESTION

    async def select_direct(self, request_text, candidates, valid_names, timeout) -> str:
        await asyncio.sleep(self.delay)
        return "dev"


def test_selector_enforces_its_own_deadline(registry) -> None:
    selector = WorkflowSelector(registry, DeadlineIgnoringRunner(delay=1.5), timeout=0.05)
    definitions = [_definition("dev", ["feature"])]

    started = time.monotonic()
    decision = asyncio.run(selector.select("x", [], definitions))
    elapsed = time.monotonic() - started

    assert elapsed < 0.5
    assert decision.chosen_name == "full-development"
    assert decision.selection_mode == SelectionMode.CLASSIFICATION
    assert "direct selection timed out" in decision.reasoning
    assert "classification timed out" in decision.reasoning


def test_slow_runner_times_out_and_still_returns_decision(registry) -> None:
    runner = ChatModelRoutingRunner(SlowModel())
    definitions = [_definition("dev", ["feature"])]
    selector = WorkflowSelector(registry, runner, timeout=0.01)
    decision = asyncio.run(selector.select("x", [], definitions))
    assert decision.chosen_name == "full-development"
    assert decision.selection_mode == SelectionMode.CLASSIFICATION
    assert "timed out" in decision.reasoning


def test_chat_model_runner_normalizes_replies() -> None:
    model = ReplyModel("  **Code**.\n")
    runner = ChatModelRoutingRunner(model)
    assert asyncio.run(runner.classify("fix it", timeout=1)) == RequestClassification.CODE
    assert "Classify this issue request" in model.messages[1].content

    with pytest.raises(RoutingRunnerError):
        asyncio.run(ChatModelRoutingRunner(ReplyModel("banana")).classify("x", timeout=1))

    selected = asyncio.run(
        ChatModelRoutingRunner(ReplyModel('"dev"')).select_direct("x", [], ["dev", "full-development"], timeout=1)
    )
    assert selected == "dev"


def test_normalize_reply_rejects_empty_and_unknown() -> None:
    assert normalize_reply("USER-TESTING", ["user-testing"]) == "user-testing"
    with pytest.raises(RoutingRunnerError, match="empty"):
        normalize_reply("  ", ["code"])
    with pytest.raises(RoutingRunnerError):
        normalize_reply("something else", ["code"])


def test_infer_classification_prefers_triggers_then_name_table() -> None:
    definitions = [_definition("custom", ["x"], classifications=["release", "code"])]
    assert infer_classification("custom", definitions) == RequestClassification.RELEASE
    assert infer_classification("plan-mode") == RequestClassification.PLANNING
    assert infer_classification("unknown-flow") == RequestClassification.CODE


def test_router_merges_loaded_definitions_into_selection(tmp_path: Path) -> None:
    workflows = tmp_path / "workflows"
    workflows.mkdir()
    (workflows / "flows.yaml").write_text(
        """
workflows:
  - name: bug-triage
    description: Triage bugs
    priority: 20
    triggers:
      labels: [bug]
    subroutines:
      - name: triage
        prompt_file: prompts/triage.md
""",
        encoding="utf-8",
    )
    router = ProcedureRouter(FakeRunner(selection="bug-triage"), loader=WorkflowLoader(str(tmp_path)))
    assert router.registry.get("bug-triage") is None

    router.reload()
    assert router.registry.get("bug-triage") is not None
    assert router.built_ins.get("bug-triage") is None

    decision = asyncio.run(router.select("Crash", ["Bug"]))
    assert decision.chosen_name == "bug-triage"
    assert decision.selection_mode == SelectionMode.LABEL

    fallback = asyncio.run(router.select("Crash", []))
    assert fallback.selection_mode == SelectionMode.DIRECT
    assert router.load_errors() == {}
