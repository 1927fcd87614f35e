"""Durable queue of decisions waiting on a human."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from . import events
from .contracts import (
    EscalationMetrics,
    EscalationRecord,
    EscalationStatus,
    utcnow,
)
from .errors import AlreadyResolvedError, CorruptEscalationError, EscalationNotFoundError
from .events import EventBus
from .utils.fs import write_json_atomic

logger = logging.getLogger(__name__)

ResolutionListener = Callable[[EscalationRecord], Union[None, Awaitable[None]]]


class EscalationQueue:
    """Escalations stored one JSON file per record under ``directory``.

    Records are never deleted. Writes to a single record are serialised by a
    per-record lock and land via atomic rename, so readers always see either
    the old or the new version of a file.
    """

    def __init__(self, directory: str | Path, event_bus: Optional[EventBus] = None) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.event_bus = event_bus
        self._locks: Dict[str, asyncio.Lock] = {}
        self._signals: Dict[str, asyncio.Event] = {}
        self._listeners: List[ResolutionListener] = []

    # ------------------------------------------------------------------
    # Helpers
    def _path(self, escalation_id: str) -> Path:
        if not escalation_id or "/" in escalation_id or escalation_id.startswith("."):
            raise ValueError(f"Invalid escalation id: {escalation_id!r}")
        return self.directory / f"{escalation_id}.json"

    def _lock(self, escalation_id: str) -> asyncio.Lock:
        lock = self._locks.get(escalation_id)
        if lock is None:
            lock = self._locks[escalation_id] = asyncio.Lock()
        return lock

    def _signal(self, escalation_id: str) -> asyncio.Event:
        signal = self._signals.get(escalation_id)
        if signal is None:
            signal = self._signals[escalation_id] = asyncio.Event()
        return signal

    def _write(self, record: EscalationRecord) -> None:
        write_json_atomic(self._path(record.id), record.model_dump(mode="json"))

    def _read(self, path: Path) -> EscalationRecord:
        try:
            return EscalationRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise CorruptEscalationError(path.stem, str(exc)) from exc

    def _read_all(self) -> List[EscalationRecord]:
        records = []
        for path in self.directory.glob("*.json"):
            try:
                records.append(self._read(path))
            except (OSError, CorruptEscalationError) as exc:
                logger.warning(f"Skipping unreadable escalation file {path}: {exc}")
        return sorted(records, key=lambda r: r.created_at)

    async def _emit(self, name: str, record: EscalationRecord) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(
                name, record.workflow_id, id=record.id, step_index=record.step_index
            )

    # ------------------------------------------------------------------
    # Queue API
    def add_resolution_listener(self, listener: ResolutionListener) -> None:
        """Call ``listener`` with every record resolved through this queue."""
        self._listeners.append(listener)

    async def add(
        self,
        workflow_id: str,
        step_index: int,
        question: str,
        context: Optional[Dict[str, Any]] = None,
        confidence: Optional[float] = None,
    ) -> EscalationRecord:
        if not workflow_id or not workflow_id.strip():
            raise ValueError("workflow_id is required and cannot be empty")
        if not question or not question.strip():
            raise ValueError("question is required and cannot be empty")
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Invalid confidence score: {confidence}. Must be between 0 and 1.")
        record = EscalationRecord(
            workflow_id=workflow_id,
            step_index=step_index,
            question=question,
            context=context or {},
            confidence=confidence,
        )
        async with self._lock(record.id):
            await asyncio.to_thread(self._write, record)
        logger.info(
            f"Escalation {record.id} created for workflow_id={workflow_id} step={step_index}"
        )
        await self._emit(events.ESCALATION_CREATED, record)
        return record

    async def list(
        self,
        status: Optional[EscalationStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> List[EscalationRecord]:
        records = await asyncio.to_thread(self._read_all)
        return [
            r
            for r in records
            if (status is None or r.status == status)
            and (workflow_id is None or r.workflow_id == workflow_id)
        ]

    async def get_by_id(self, escalation_id: str) -> EscalationRecord:
        path = self._path(escalation_id)
        if not path.exists():
            raise EscalationNotFoundError(escalation_id)
        return await asyncio.to_thread(self._read, path)

    async def respond(self, escalation_id: str, response: Any) -> EscalationRecord:
        """Resolve a pending escalation with the human's answer."""
        async with self._lock(escalation_id):
            record = await self.get_by_id(escalation_id)
            if record.status != EscalationStatus.PENDING:
                raise AlreadyResolvedError(escalation_id, record.status.value)
            resolved_at = utcnow()
            record = record.model_copy(
                update={
                    "status": EscalationStatus.RESOLVED,
                    "response": response,
                    "resolved_at": resolved_at,
                    "resolution_time_ms": int(
                        (resolved_at - record.created_at).total_seconds() * 1000
                    ),
                }
            )
            await asyncio.to_thread(self._write, record)
        logger.info(
            f"Escalation {escalation_id} resolved after {record.resolution_time_ms}ms"
        )
        await self._emit(events.ESCALATION_RESOLVED, record)
        self._signal(escalation_id).set()
        for listener in list(self._listeners):
            try:
                result = listener(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(f"Resolution listener failed for escalation {escalation_id}: {exc}")
        return record

    async def cancel(self, escalation_id: str, reason: str = "cancelled") -> EscalationRecord:
        async with self._lock(escalation_id):
            record = await self.get_by_id(escalation_id)
            if record.status != EscalationStatus.PENDING:
                raise AlreadyResolvedError(escalation_id, record.status.value)
            record = record.model_copy(
                update={
                    "status": EscalationStatus.CANCELLED,
                    "resolved_at": utcnow(),
                    "context": {**record.context, "cancel_reason": reason},
                }
            )
            await asyncio.to_thread(self._write, record)
        logger.info(f"Escalation {escalation_id} cancelled: {reason}")
        self._signal(escalation_id).set()
        return record

    async def wait_for_resolution(
        self,
        escalation_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 1.0,
    ) -> EscalationRecord:
        """Wait until the escalation leaves the pending state.

        The on-disk record is re-read every ``poll_interval`` seconds so
        answers given by another process (the CLI) are noticed too.
        Raises ``asyncio.TimeoutError`` when ``timeout`` elapses first.
        """

        async def _wait() -> EscalationRecord:
            signal = self._signal(escalation_id)
            while True:
                record = await self.get_by_id(escalation_id)
                if record.status != EscalationStatus.PENDING:
                    return record
                try:
                    await asyncio.wait_for(signal.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    continue

        return await asyncio.wait_for(_wait(), timeout=timeout)

    async def get_metrics(self) -> EscalationMetrics:
        records = await self.list()
        resolved = [r for r in records if r.status == EscalationStatus.RESOLVED]
        by_workflow: Dict[str, int] = {}
        for record in records:
            by_workflow[record.workflow_id] = by_workflow.get(record.workflow_id, 0) + 1
        avg = (
            round(sum(r.resolution_time_ms or 0 for r in resolved) / len(resolved))
            if resolved
            else 0.0
        )
        return EscalationMetrics(
            pending_count=sum(1 for r in records if r.status == EscalationStatus.PENDING),
            resolved_count=len(resolved),
            cancelled_count=sum(1 for r in records if r.status == EscalationStatus.CANCELLED),
            avg_resolution_time_ms=avg,
            by_workflow=by_workflow,
        )
