"""The opaque agent capability consumed by step handlers and the decision engine."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from pydantic import BaseModel


class AgentResponse(BaseModel):
    """What an agent returns: an answer plus an optional confidence hint."""

    content: Any = None
    confidence_hint: Optional[float] = None
    rationale: str = ""


@runtime_checkable
class AgentCapability(Protocol):
    """Anything that can reason about a prompt context.

    Implementations raise ``AgentParseError`` when the answer cannot be
    interpreted and ``TransientHandlerError`` for retryable failures.
    """

    async def invoke(self, prompt_context: Dict[str, Any]) -> AgentResponse:
        ...
