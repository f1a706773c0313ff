from __future__ import annotations

import logging
from collections.abc import Callable

from .models import (
    AgentSession,
    ExternalSessionRef,
    Procedure,
    SessionProcedureState,
    StepDefinition,
    StepHistoryEntry,
)
from .registry import ProcedureRegistry

logger = logging.getLogger(__name__)


class ProcedureStateError(RuntimeError):
    """Raised when a session is driven in a way its procedure state does not allow."""


class ProcedureStateMachine:
    """Track a session's position within its procedure.

    States: uninitialized (no procedure state), in progress
    (``0 <= index < len(steps)``) and finished (``index == len(steps)``).
    Procedure names resolve through the registry current at call time, so a
    reload that replaces a definition is picked up on the next lookup.
    """

    def __init__(self, registry_provider: Callable[[], ProcedureRegistry] | ProcedureRegistry) -> None:
        if isinstance(registry_provider, ProcedureRegistry):
            fixed = registry_provider
            self._registry_provider: Callable[[], ProcedureRegistry] = lambda: fixed
        else:
            self._registry_provider = registry_provider

    def _procedure(self, session: AgentSession) -> Procedure | None:
        state = session.procedure_state
        if state is None:
            return None
        procedure = self._registry_provider().get(state.procedure_name)
        if procedure is None:
            logger.error("Procedure '%s' for session %s not found", state.procedure_name, session.session_id)
        return procedure

    def initialize(self, session: AgentSession, procedure: Procedure) -> SessionProcedureState:
        if session.procedure_state is not None:
            raise ProcedureStateError(
                f"Session {session.session_id} already runs procedure "
                f"'{session.procedure_state.procedure_name}'; clear it before restarting"
            )
        session.procedure_state = SessionProcedureState(procedure_name=procedure.name)
        logger.debug("Session %s initialized with procedure '%s'", session.session_id, procedure.name)
        return session.procedure_state

    def clear(self, session: AgentSession) -> None:
        """Drop the session's procedure state so a new procedure can start."""
        session.procedure_state = None

    def current_step(self, session: AgentSession) -> StepDefinition | None:
        procedure = self._procedure(session)
        if procedure is None or session.procedure_state is None:
            return None
        index = session.procedure_state.current_step_index
        if index < 0 or index >= len(procedure.steps):
            return None
        return procedure.steps[index]

    def next_step(self, session: AgentSession) -> StepDefinition | None:
        procedure = self._procedure(session)
        if procedure is None or session.procedure_state is None:
            return None
        next_index = session.procedure_state.current_step_index + 1
        if next_index >= len(procedure.steps):
            return None
        return procedure.steps[next_index]

    def advance(self, session: AgentSession, external_session_id: str | None = None) -> None:
        """Record completion of the current step and move to the next one.

        Args:
            session: Session whose procedure state is advanced.
            external_session_id: Runner session that executed the step, if known.

        Raises:
            ProcedureStateError: If the session has no procedure state, its
                procedure no longer resolves, or the procedure has already finished.
        """
        state = session.procedure_state
        if state is None:
            raise ProcedureStateError(f"Cannot advance session {session.session_id}: no procedure state")
        procedure = self._procedure(session)
        if procedure is None:
            raise ProcedureStateError(
                f"Cannot advance session {session.session_id}: procedure '{state.procedure_name}' is not registered"
            )
        if state.current_step_index >= len(procedure.steps):
            raise ProcedureStateError(
                f"Cannot advance session {session.session_id}: procedure '{procedure.name}' already finished"
            )

        step = procedure.steps[state.current_step_index]
        ref = (
            ExternalSessionRef(runner=session.runner_kind, session_id=external_session_id)
            if external_session_id
            else None
        )
        state.step_history.append(StepHistoryEntry(step_name=step.name, external_session_ref=ref))
        state.current_step_index += 1

    def is_complete(self, session: AgentSession) -> bool:
        return self.next_step(session) is None

    def is_finished(self, session: AgentSession) -> bool:
        procedure = self._procedure(session)
        if procedure is None or session.procedure_state is None:
            return False
        return session.procedure_state.current_step_index >= len(procedure.steps)

    def requires_approval(self, session: AgentSession) -> bool:
        step = self.current_step(session)
        return bool(step is not None and step.requires_approval)
