from .base import AgentCapability, AgentResponse
from .wrapper import (
    AgentAnswer,
    PydanticAIAgent,
    PydanticAIReviewer,
    PydanticAISelfReviewer,
    render_prompt,
)

__all__ = [
    "AgentAnswer",
    "AgentCapability",
    "AgentResponse",
    "PydanticAIAgent",
    "PydanticAIReviewer",
    "PydanticAISelfReviewer",
    "render_prompt",
]
