"""Post text generation: draft, review, clamp."""
from actionbot.generation.agent import (
    ContentGenerator,
    GenerationRequest,
    GenerationResponse,
    truncate_post,
)
from actionbot.generation.llm import ChatClient, ChatResult

__all__ = [
    "ChatClient",
    "ChatResult",
    "ContentGenerator",
    "GenerationRequest",
    "GenerationResponse",
    "truncate_post",
]
