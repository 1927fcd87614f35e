from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior

from ..contracts import ReviewCheck, SelfReviewReport, SubReviewReport
from ..errors import AgentParseError, FatalInputError, TransientHandlerError
from .base import AgentResponse

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class AgentAnswer(BaseModel):
    """Structured output requested from reasoning agents."""

    content: str
    confidence: Optional[float] = Field(
        default=None, description="How sure you are, from 0.0 to 1.0"
    )
    rationale: str = ""


def render_prompt(prompt_context: Dict[str, Any]) -> str:
    """Turn a prompt context into the text sent to the model."""
    context = dict(prompt_context)
    prompt = context.pop("prompt", None) or context.pop("question", "")
    if not context:
        return str(prompt)
    return f"{prompt}\n\nContext:\n{json.dumps(context, indent=2, default=str)}"


async def run_agent(agent: Agent, prompt: str, deps: Any = None) -> Any:
    """Run a pydantic-ai agent, mapping its failures onto stepwise errors."""
    try:
        result = await agent.run(prompt, deps=deps)
    except UnexpectedModelBehavior as exc:
        raise AgentParseError(f"Agent output could not be interpreted: {exc}") from exc
    except ModelHTTPError as exc:
        if exc.status_code in RETRYABLE_STATUS_CODES:
            raise TransientHandlerError(f"Model call failed ({exc.status_code}): {exc}") from exc
        raise FatalInputError(f"Model call rejected ({exc.status_code}): {exc}") from exc
    return result.output


class PydanticAIAgent:
    """Adapt a ``pydantic_ai.Agent`` to the agent capability protocol.

    The wrapped agent should produce ``AgentAnswer``; plain string output is
    accepted when it holds an ``AgentAnswer``-shaped JSON object or when
    ``allow_plain_text`` is set (the confidence hint is then missing).
    """

    def __init__(self, agent: Agent, deps: Any = None, allow_plain_text: bool = False) -> None:
        self.agent = agent
        self.deps = deps
        self.allow_plain_text = allow_plain_text

    @classmethod
    def from_model(cls, model: Any, instructions: str = "", **kwargs: Any) -> "PydanticAIAgent":
        agent = Agent(model, output_type=AgentAnswer, instructions=instructions or None)
        return cls(agent, **kwargs)

    async def invoke(self, prompt_context: Dict[str, Any]) -> AgentResponse:
        output = await run_agent(self.agent, render_prompt(prompt_context), self.deps)
        return self._to_response(output)

    def _to_response(self, output: Any) -> AgentResponse:
        if isinstance(output, AgentAnswer):
            return AgentResponse(
                content=output.content,
                confidence_hint=output.confidence,
                rationale=output.rationale,
            )
        if isinstance(output, str):
            try:
                return self._to_response(AgentAnswer.model_validate_json(output))
            except ValueError:
                if self.allow_plain_text:
                    return AgentResponse(content=output)
                raise AgentParseError("Agent returned unstructured text", raw=output)
        if isinstance(output, BaseModel):
            data = output.model_dump()
            return AgentResponse(
                content=data.get("content", data),
                confidence_hint=data.get("confidence"),
                rationale=data.get("rationale", ""),
            )
        raise AgentParseError(f"Unsupported agent output type: {type(output).__name__}")


class PydanticAISelfReviewer:
    """Self-review through the producing agent's own model.

    ``review_agent`` must produce ``SelfReviewReport``; ``fix_agent`` returns
    the corrected artifact as text.
    """

    def __init__(self, identity: str, review_agent: Agent, fix_agent: Optional[Agent] = None) -> None:
        self.identity = identity
        self.review_agent = review_agent
        self.fix_agent = fix_agent

    async def self_review(self, artifact: Any, context: Dict[str, Any]) -> SelfReviewReport:
        prompt = render_prompt(
            {"prompt": "Review your own artifact against the checklist.", "artifact": artifact, **context}
        )
        output = await run_agent(self.review_agent, prompt)
        if not isinstance(output, SelfReviewReport):
            raise AgentParseError(f"Expected SelfReviewReport, got {type(output).__name__}")
        return output

    async def fix(self, artifact: Any, report: SelfReviewReport, context: Dict[str, Any]) -> Any:
        if self.fix_agent is None:
            logger.warning(f"{self.identity} has no fix agent; artifact left unchanged")
            return artifact
        prompt = render_prompt(
            {
                "prompt": "Fix the critical issues found in the artifact and return it in full.",
                "artifact": artifact,
                "critical_issues": report.critical_issues,
                **context,
            }
        )
        return await run_agent(self.fix_agent, prompt)


class PydanticAIReviewer:
    """Independent reviewer backed by an agent producing ``SubReviewReport``."""

    PROMPTS = {
        ReviewCheck.SECURITY: "Review the artifact for security vulnerabilities.",
        ReviewCheck.QUALITY: "Review the artifact for code quality and maintainability.",
        ReviewCheck.TEST_ADEQUACY: "Judge whether the tests adequately cover the artifact.",
    }

    def __init__(self, identity: str, agent: Agent) -> None:
        self.identity = identity
        self.agent = agent

    async def _review(self, check: ReviewCheck, prompt_context: Dict[str, Any]) -> SubReviewReport:
        prompt = render_prompt({"prompt": self.PROMPTS[check], **prompt_context})
        output = await run_agent(self.agent, prompt)
        if not isinstance(output, SubReviewReport):
            raise AgentParseError(f"Expected SubReviewReport, got {type(output).__name__}")
        return output.model_copy(update={"check": check})

    async def security_review(self, artifact: Any, context: Dict[str, Any]) -> SubReviewReport:
        return await self._review(ReviewCheck.SECURITY, {"artifact": artifact, **context})

    async def quality_review(self, artifact: Any, context: Dict[str, Any]) -> SubReviewReport:
        return await self._review(ReviewCheck.QUALITY, {"artifact": artifact, **context})

    async def test_adequacy_review(
        self, artifact: Any, test_results: Optional[Any], context: Dict[str, Any]
    ) -> SubReviewReport:
        return await self._review(
            ReviewCheck.TEST_ADEQUACY,
            {"artifact": artifact, "test_results": test_results, **context},
        )
