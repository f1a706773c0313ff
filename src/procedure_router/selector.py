from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from .models import (
    RequestClassification,
    SelectionMode,
    VcsPlatform,
    WorkflowDefinition,
    WorkflowSelectionDecision,
)
from .registry import DEFAULT_CLASSIFICATION, ProcedureRegistry
from .runners import RoutingRunner, RoutingRunnerError

logger = logging.getLogger(__name__)

NAME_TO_CLASSIFICATION: dict[str, RequestClassification] = {
    "full-development": RequestClassification.CODE,
    "full-development-azure": RequestClassification.CODE,
    "simple-question": RequestClassification.QUESTION,
    "documentation-edit": RequestClassification.DOCUMENTATION,
    "documentation-edit-azure": RequestClassification.DOCUMENTATION,
    "debugger-full": RequestClassification.DEBUGGER,
    "debugger-full-azure": RequestClassification.DEBUGGER,
    "orchestrator-full": RequestClassification.ORCHESTRATOR,
    "plan-mode": RequestClassification.PLANNING,
    "user-testing": RequestClassification.USER_TESTING,
    "release": RequestClassification.RELEASE,
}

RegistrySource = ProcedureRegistry | Callable[[], ProcedureRegistry]
T = TypeVar("T")


async def _bounded(call: Awaitable[T], timeout: float, what: str) -> T:
    """Await a runner call under the selector's own deadline."""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RoutingRunnerError(f"{what} timed out after {timeout}s") from exc


def infer_classification(name: str, definitions: Sequence[WorkflowDefinition] | None = None) -> RequestClassification:
    """Best-effort classification for a chosen procedure name."""
    for definition in definitions or ():
        if definition.name == name:
            if definition.triggers is not None and definition.triggers.classifications:
                return definition.triggers.classifications[0]
            break
    return NAME_TO_CLASSIFICATION.get(name, DEFAULT_CLASSIFICATION)


class WorkflowSelector:
    """Pick a procedure for a request: label match, then direct selection, then classification.

    ``select`` always returns a decision. Runner failures in the AI-backed
    tiers fall through to the next tier, and a failing classification call
    degrades to the ``code`` procedure with the error kept in ``reasoning``.
    """

    def __init__(
        self,
        registry: RegistrySource,
        runner: RoutingRunner,
        *,
        timeout: float = 10.0,
        platform: VcsPlatform | str | None = None,
    ) -> None:
        if isinstance(registry, ProcedureRegistry):
            fixed = registry
            self._registry_provider: Callable[[], ProcedureRegistry] = lambda: fixed
        else:
            self._registry_provider = registry
        self.runner = runner
        self.timeout = timeout
        self.platform = platform

    @property
    def registry(self) -> ProcedureRegistry:
        return self._registry_provider()

    async def select(
        self,
        request_text: str,
        labels: Sequence[str] | None = None,
        definitions: Sequence[WorkflowDefinition] | None = None,
        *,
        platform: VcsPlatform | str | None = None,
        timeout: float | None = None,
    ) -> WorkflowSelectionDecision:
        registry = self.registry
        effective_platform = platform if platform is not None else self.platform
        effective_timeout = timeout if timeout is not None else self.timeout
        candidates = list(definitions or [])

        label_decision = self._match_by_labels(registry, labels, candidates)
        if label_decision is not None:
            return label_decision

        if not candidates:
            logger.debug("No external workflows loaded; using classification routing")
            return await self._classify(registry, request_text, effective_platform, effective_timeout)

        try:
            return await self._select_direct(registry, request_text, candidates, effective_timeout)
        except Exception as exc:  # noqa: BLE001 - any direct-selection failure falls through
            logger.warning("Direct workflow selection failed, falling back to classification: %s", exc)
            fallback_reason = str(exc)

        decision = await self._classify(registry, request_text, effective_platform, effective_timeout)
        return decision.model_copy(
            update={"reasoning": f"Fallback to classification due to error: {fallback_reason}. {decision.reasoning}"}
        )

    async def determine_routine(
        self,
        request_text: str,
        platform: VcsPlatform | str | None = None,
        *,
        timeout: float | None = None,
    ) -> WorkflowSelectionDecision:
        """Run the classification tier alone."""
        return await self._classify(
            self.registry,
            request_text,
            platform if platform is not None else self.platform,
            timeout if timeout is not None else self.timeout,
        )

    def _match_by_labels(
        self,
        registry: ProcedureRegistry,
        labels: Sequence[str] | None,
        candidates: list[WorkflowDefinition],
    ) -> WorkflowSelectionDecision | None:
        if not labels or not candidates:
            return None
        issue_labels = {label.lower() for label in labels}
        matches = [
            definition
            for definition in candidates
            if any(trigger.lower() in issue_labels for trigger in definition.trigger_labels)
        ]
        if not matches:
            return None

        # sorted() is stable: equal priorities keep input order.
        chosen = sorted(matches, key=lambda definition: definition.priority, reverse=True)[0]
        procedure = registry.get(chosen.name)
        if procedure is None:
            logger.warning("Label-matched workflow '%s' is not registered; ignoring label match", chosen.name)
            return None

        matched = [label for label in chosen.trigger_labels if label.lower() in issue_labels]
        return WorkflowSelectionDecision(
            chosen_name=chosen.name,
            procedure=procedure,
            selection_mode=SelectionMode.LABEL,
            inferred_classification=infer_classification(chosen.name, candidates),
            reasoning=f'Label-based match: issue labels [{", ".join(matched)}] -> workflow "{chosen.name}"',
        )

    async def _select_direct(
        self,
        registry: ProcedureRegistry,
        request_text: str,
        candidates: list[WorkflowDefinition],
        timeout: float,
    ) -> WorkflowSelectionDecision:
        valid_names = list(dict.fromkeys([definition.name for definition in candidates] + registry.names()))
        selected = await _bounded(
            self.runner.select_direct(request_text, candidates, valid_names, timeout), timeout, "direct selection"
        )
        procedure = registry.get(selected)
        if procedure is None:
            raise RoutingRunnerError(f'Selected workflow "{selected}" not found in registry')
        return WorkflowSelectionDecision(
            chosen_name=selected,
            procedure=procedure,
            selection_mode=SelectionMode.DIRECT,
            inferred_classification=infer_classification(selected, candidates),
            reasoning=f'Directly selected workflow "{selected}" based on issue content',
        )

    async def _classify(
        self,
        registry: ProcedureRegistry,
        request_text: str,
        platform: VcsPlatform | str | None,
        timeout: float,
    ) -> WorkflowSelectionDecision:
        try:
            classification = await _bounded(self.runner.classify(request_text, timeout), timeout, "classification")
            procedure = registry.procedure_for_classification(classification, platform)
        except Exception as exc:  # noqa: BLE001 - classification must always produce a decision
            logger.warning("Request classification failed, using default procedure: %s", exc)
            procedure = registry.procedure_for_classification(DEFAULT_CLASSIFICATION, platform)
            return WorkflowSelectionDecision(
                chosen_name=procedure.name,
                procedure=procedure,
                selection_mode=SelectionMode.CLASSIFICATION,
                inferred_classification=DEFAULT_CLASSIFICATION,
                reasoning=f"Fallback to {procedure.name} due to error: {exc}",
            )
        return WorkflowSelectionDecision(
            chosen_name=procedure.name,
            procedure=procedure,
            selection_mode=SelectionMode.CLASSIFICATION,
            inferred_classification=classification,
            reasoning=f'Classified as "{classification.value}" -> using procedure "{procedure.name}"',
        )
