from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command
from pydantic import ValidationError

from .models import StepDefinition, ValidationLoopState, ValidationResult
from .registry import BUILT_IN_STEPS

logger = logging.getLogger(__name__)

PARSE_REPROMPT = (
    "Your previous output could not be parsed. Respond with ONLY a JSON object of the form "
    '{"pass": true|false, "failures": ["..."], "summary": "..."} and nothing else.'
)


class ValidationParseError(ValueError):
    """Raised when checks output does not carry a well-formed verdict."""


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from step output.

    Attempts parsing in order: direct JSON, fenced code block, first/last brace extraction.

    Raises:
        ValidationParseError: If no JSON object can be extracted from the text.
    """
    body = text.strip()
    if not body:
        raise ValidationParseError("Checks step returned empty output; expected JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        try:
            payload = json.loads(fenced.group(1))
        except json.JSONDecodeError as exc:
            raise ValidationParseError(f"Failed to parse fenced JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end > start:
        try:
            payload = json.loads(body[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ValidationParseError(f"Failed to parse JSON object from output: {exc}") from exc
        if isinstance(payload, dict):
            return payload
    raise ValidationParseError("Checks step output did not contain a JSON object")


class ValidationLoopController:
    """Bookkeeping for the bounded checks/fix loop."""

    def __init__(self, max_iterations: int = 3, max_parse_retries: int = 2) -> None:
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got: {max_iterations}")
        if max_parse_retries < 0:
            raise ValueError(f"max_parse_retries must be >= 0, got: {max_parse_retries}")
        self.max_iterations = max_iterations
        self.max_parse_retries = max_parse_retries

    def parse_result(self, raw: str) -> ValidationResult:
        payload = extract_json_payload(raw)
        if "pass" not in payload and "passed" not in payload:
            raise ValidationParseError("Checks output is missing the 'pass' field")
        try:
            return ValidationResult.model_validate(payload)
        except ValidationError as exc:
            raise ValidationParseError(f"Checks output does not match the verdict schema: {exc}") from exc

    def start(self, max_iterations: int | None = None) -> ValidationLoopState:
        return ValidationLoopState(max_iterations=max_iterations or self.max_iterations)

    def should_retry(self, state: ValidationLoopState) -> bool:
        if state.last_result is None or state.last_result.passed:
            return False
        return state.iteration_count < state.max_iterations

    def record_iteration(self, state: ValidationLoopState, result: ValidationResult) -> ValidationLoopState:
        state.iteration_count += 1
        state.last_result = result
        return state

    def is_exhausted(self, state: ValidationLoopState) -> bool:
        return (
            state.last_result is not None
            and not state.last_result.passed
            and state.iteration_count >= state.max_iterations
        )


class StepExecutor(Protocol):
    """Runs one step through the external agent runner and returns its final text."""

    def __call__(self, step: StepDefinition, message: str) -> str: ...


class ValidationGraphState(TypedDict, total=False):
    checks_step: StepDefinition
    fix_step: StepDefinition
    context: str
    loop_state: ValidationLoopState
    parse_failures: int
    parse_error: str
    pending_reprompt: bool
    fix_attempts: int
    passed: bool


@dataclass
class ValidationLoopOutcome:
    passed: bool
    exhausted: bool
    state: ValidationLoopState
    fix_attempts: int
    parse_failures: int
    parse_error: str | None = None


class ValidationLoop:
    """Checks/fix subgraph: checks -> route -> fix -> checks, ending in passed or exhausted."""

    def __init__(
        self,
        executor: StepExecutor,
        controller: ValidationLoopController | None = None,
        *,
        fix_step: StepDefinition | None = None,
    ) -> None:
        self.executor = executor
        self.controller = controller or ValidationLoopController()
        self.fix_step = fix_step or BUILT_IN_STEPS["validation-fixer"]
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ValidationGraphState)
        graph.add_node("checks", self._checks)
        graph.add_node("route", self._route)
        graph.add_node("fix", self._fix)
        graph.add_node("passed", self._passed)
        graph.add_node("exhausted", self._exhausted)

        graph.add_edge(START, "checks")
        graph.add_edge("checks", "route")
        graph.add_edge("fix", "checks")
        graph.add_edge("passed", END)
        graph.add_edge("exhausted", END)
        return graph

    def _checks(self, state: ValidationGraphState) -> dict[str, Any]:
        message = PARSE_REPROMPT if state.get("pending_reprompt") else state.get("context", "")
        raw = self.executor(state["checks_step"], message)
        try:
            result = self.controller.parse_result(raw)
        except ValidationParseError as exc:
            failures = int(state.get("parse_failures", 0)) + 1
            logger.warning("Unparseable output from '%s' (%d): %s", state["checks_step"].name, failures, exc)
            return {"parse_failures": failures, "parse_error": str(exc)}

        loop_state = self.controller.record_iteration(state["loop_state"].model_copy(deep=True), result)
        logger.info(
            "Validation iteration %d/%d: %s",
            loop_state.iteration_count,
            loop_state.max_iterations,
            "pass" if result.passed else f"{len(result.failures)} failure(s)",
        )
        return {"loop_state": loop_state, "parse_failures": 0, "parse_error": "", "pending_reprompt": False}

    def _route(self, state: ValidationGraphState) -> Command[str]:
        if state.get("parse_error"):
            if int(state.get("parse_failures", 0)) <= self.controller.max_parse_retries:
                return Command(goto="checks", update={"pending_reprompt": True})
            return Command(goto="exhausted")
        loop_state = state["loop_state"]
        if loop_state.last_result is not None and loop_state.last_result.passed:
            return Command(goto="passed")
        if self.controller.should_retry(loop_state):
            return Command(goto="fix")
        return Command(goto="exhausted")

    def _fix(self, state: ValidationGraphState) -> dict[str, Any]:
        last = state["loop_state"].last_result
        failures = last.failures if last is not None else []
        message = "Fix the following validation failures:\n" + "\n".join(f"- {item}" for item in failures)
        self.executor(state["fix_step"], message)
        return {"fix_attempts": int(state.get("fix_attempts", 0)) + 1}

    def _passed(self, state: ValidationGraphState) -> dict[str, Any]:
        return {"passed": True}

    def _exhausted(self, state: ValidationGraphState) -> dict[str, Any]:
        loop_state = state["loop_state"]
        parse_error = state.get("parse_error")
        if parse_error:
            loop_state = self.controller.record_iteration(
                loop_state.model_copy(deep=True),
                ValidationResult(passed=False, failures=[f"Unparseable checks output: {parse_error}"]),
            )
        logger.warning("Validation loop exhausted after %d iteration(s)", loop_state.iteration_count)
        return {"passed": False, "loop_state": loop_state}

    def run(self, checks_step: StepDefinition, *, context: str = "") -> ValidationLoopOutcome:
        """Drive ``checks_step`` until it passes or the iteration budget is spent."""
        loop_state = self.controller.start(checks_step.max_iterations)
        per_iteration = 3 * (self.controller.max_parse_retries + 1)
        result = self.graph.invoke(
            {
                "checks_step": checks_step,
                "fix_step": self.fix_step,
                "context": context,
                "loop_state": loop_state,
                "parse_failures": 0,
                "parse_error": "",
                "pending_reprompt": False,
                "fix_attempts": 0,
            },
            config={"recursion_limit": loop_state.max_iterations * per_iteration + 10},
        )
        final_state = result["loop_state"]
        parse_error = result.get("parse_error") or None
        return ValidationLoopOutcome(
            passed=bool(result.get("passed")),
            exhausted=not result.get("passed"),
            state=final_state,
            fix_attempts=int(result.get("fix_attempts", 0)),
            parse_failures=int(result.get("parse_failures", 0)),
            parse_error=parse_error,
        )
