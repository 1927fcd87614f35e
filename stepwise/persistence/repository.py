"""Store abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowState


class StateStore(Protocol):
    """Protocol for workflow state persistence backends."""

    async def save(self, state: WorkflowState) -> None:
        """Durably persist the full workflow state."""

    async def load(self, workflow_id: str) -> WorkflowState | None:
        """Return the latest persisted state or ``None`` when unknown."""

    async def delete(self, workflow_id: str) -> None:
        """Remove persisted state, including backups."""

    async def list_ids(self) -> list[str]:
        """Return ids of all persisted workflows."""

    async def load_backup(self, workflow_id: str, generation: int = 1) -> WorkflowState | None:
        """Return an older generation of the state, ``1`` being the newest backup."""
