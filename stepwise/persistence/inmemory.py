"""In-memory implementation of the state store."""

from __future__ import annotations

from typing import Dict, List

from ..contracts import WorkflowState
from .repository import StateStore


class InMemoryStateStore(StateStore):
    """Keep workflow state in local memory.

    Useful for tests. States are deep-copied on the way in and out so callers
    never share a mutable instance with the store. Data is not persisted
    across process restarts.
    """

    def __init__(self, backups: int = 3) -> None:
        self._states: Dict[str, WorkflowState] = {}
        self._history: Dict[str, List[WorkflowState]] = {}
        self._backups = backups

    async def save(self, state: WorkflowState) -> None:
        previous = self._states.get(state.id)
        if previous is not None and self._backups > 0:
            history = self._history.setdefault(state.id, [])
            history.insert(0, previous)
            del history[self._backups :]
        self._states[state.id] = state.model_copy(deep=True)

    async def load(self, workflow_id: str) -> WorkflowState | None:
        state = self._states.get(workflow_id)
        return state.model_copy(deep=True) if state else None

    async def delete(self, workflow_id: str) -> None:
        self._states.pop(workflow_id, None)
        self._history.pop(workflow_id, None)

    async def list_ids(self) -> list[str]:
        return sorted(self._states)

    async def load_backup(self, workflow_id: str, generation: int = 1) -> WorkflowState | None:
        history = self._history.get(workflow_id, [])
        if generation < 1 or generation > len(history):
            return None
        return history[generation - 1].model_copy(deep=True)
