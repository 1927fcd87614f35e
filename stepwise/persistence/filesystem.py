"""Filesystem implementation of the state store."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from ..contracts import WorkflowState
from ..errors import CorruptStateError
from ..utils.fs import write_text_atomic
from .repository import StateStore

logger = logging.getLogger(__name__)


class FileStateStore(StateStore):
    """Persist each workflow as ``{root}/{id}.json`` with a ring of backups.

    A save writes and fsyncs a temp file, shifts the current file into
    ``.bak.1`` (older generations move up to ``.bak.N``) and finally renames
    the temp file over the canonical path. A crash at any point leaves either
    the previous or the new state readable.
    """

    def __init__(self, root: str | Path, backups: int = 3) -> None:
        self.root = Path(root)
        self.backups = backups
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    def _path(self, workflow_id: str) -> Path:
        if not workflow_id or "/" in workflow_id or workflow_id.startswith("."):
            raise ValueError(f"Invalid workflow id: {workflow_id!r}")
        return self.root / f"{workflow_id}.json"

    def _backup_path(self, workflow_id: str, generation: int) -> Path:
        return self.root / f"{workflow_id}.json.bak.{generation}"

    # ------------------------------------------------------------------
    # Blocking helpers, run via asyncio.to_thread
    def _rotate_backups(self, workflow_id: str) -> None:
        current = self._path(workflow_id)
        if self.backups <= 0 or not current.exists():
            return
        for generation in range(self.backups - 1, 0, -1):
            src = self._backup_path(workflow_id, generation)
            if src.exists():
                os.replace(src, self._backup_path(workflow_id, generation + 1))
        # keep the canonical file in place until the new one is renamed over it
        backup = self._backup_path(workflow_id, 1)
        tmp_backup = backup.with_name(f"{backup.name}.tmp")
        tmp_backup.write_bytes(current.read_bytes())
        os.replace(tmp_backup, backup)

    def _save(self, state: WorkflowState) -> None:
        path = self._path(state.id)
        write_text_atomic(
            path,
            state.model_dump_json(indent=2),
            before_replace=lambda: self._rotate_backups(state.id),
        )

    def _read(self, workflow_id: str, path: Path) -> WorkflowState | None:
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8")
        try:
            return WorkflowState.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise CorruptStateError(workflow_id, str(path), str(exc)) from exc

    def _delete(self, workflow_id: str) -> None:
        self._path(workflow_id).unlink(missing_ok=True)
        for generation in range(1, self.backups + 1):
            self._backup_path(workflow_id, generation).unlink(missing_ok=True)

    def _list_ids(self) -> list[str]:
        return sorted(p.name[: -len(".json")] for p in self.root.glob("*.json"))

    # ------------------------------------------------------------------
    # Store API
    async def save(self, state: WorkflowState) -> None:
        await asyncio.to_thread(self._save, state)
        logger.debug(
            f"Saved workflow {state.id} (status={state.status.value}, step={state.current_step_index})"
        )

    async def load(self, workflow_id: str) -> WorkflowState | None:
        return await asyncio.to_thread(self._read, workflow_id, self._path(workflow_id))

    async def delete(self, workflow_id: str) -> None:
        await asyncio.to_thread(self._delete, workflow_id)
        logger.info(f"Deleted persisted state for workflow {workflow_id}")

    async def list_ids(self) -> list[str]:
        return await asyncio.to_thread(self._list_ids)

    async def load_backup(self, workflow_id: str, generation: int = 1) -> WorkflowState | None:
        if generation < 1 or generation > self.backups:
            return None
        return await asyncio.to_thread(
            self._read, workflow_id, self._backup_path(workflow_id, generation)
        )
