"""Draft and review post text for a triggered action."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

from actionbot.config import Config
from actionbot.errors import GenerationError
from actionbot.generation.llm import ChatResult
from actionbot.store.schemas import TradeEvent, WalletProfile
from actionbot.triggers import shorten_address

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a crypto trading analyst who tweets about insider activity on Polymarket.
Write engaging, informative tweets about fresh wallet trades.
Focus on: wallet freshness, trade details, market context, and potential significance.
Keep tweets under 280 characters. Be factual, concise, and use relevant emojis.
Include the market URL and wallet profile URL when relevant.
Output ONLY the tweet text, nothing else."""

EDITOR_SYSTEM_PROMPT = (
    "You are a tweet editor. Improve the tweet for clarity, engagement, and accuracy. "
    "Keep it under 280 characters. Output ONLY the improved tweet, nothing else."
)

CONTEXT_MAX_CHARS = 500
DRAFT_HISTORY_LIMIT = 3
REVIEW_EXAMPLE_LIMIT = 2
REVIEW_HISTORY_LIMIT = 2


class CompletionClient(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str) -> ChatResult:
        ...


@dataclass
class GenerationRequest:
    wallet_profile: Optional[WalletProfile] = None
    trade_event: Optional[TradeEvent] = None
    market_url: str = ""
    profile_url: str = ""
    system_prompt: str = ""
    example_tweets: list[str] = field(default_factory=list)
    historical_tweets: list[str] = field(default_factory=list)
    market_context: str = ""
    profile_context: str = ""
    max_length: int = Config.MAX_POST_LENGTH
    review_enabled: bool = True


@dataclass
class GenerationResponse:
    draft_text: str
    reviewed_text: str = ""
    final_text: str = ""
    reasoning: str = ""
    confidence: float = 1.0
    tokens_used: int = 0


def truncate_post(text: str, max_length: int = 280) -> str:
    """Clamp to max_length, preferring a word boundary past the halfway point."""
    if max_length <= 0:
        max_length = 280
    if len(text) <= max_length:
        return text

    truncated = text[: max_length - 3]
    last_space = truncated.rfind(" ")
    if last_space > max_length // 2:
        truncated = truncated[:last_space]
    return truncated + "..."


def _truncate_context(text: str, limit: int = CONTEXT_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def build_draft_prompt(request: GenerationRequest) -> str:
    lines = ["## Fresh Wallet Trade Detected", ""]

    trade = request.trade_event
    if trade is not None:
        lines.append(f"**Market**: {trade.market_name}")
        lines.append(f"**Event**: {trade.event_title}")
        lines.append(f"**Trade**: {trade.side} {trade.outcome} @ {trade.price} (Size: {trade.size} USDC)")

    profile = request.wallet_profile
    if profile is not None:
        lines.append(f"**Wallet**: {shorten_address(profile.address)}")
        lines.append(f"**Bet Count**: {profile.bet_count} (Freshness: {profile.freshness_level})")
        if profile.join_date:
            lines.append(f"**Joined**: {profile.join_date}")

    lines.append("")
    lines.append(f"**Market URL**: {request.market_url}")
    lines.append(f"**Wallet URL**: {request.profile_url}")
    lines.append("")

    if request.market_context:
        lines.append("## Market Context")
        lines.append(_truncate_context(request.market_context))
        lines.append("")
    if request.profile_context:
        lines.append("## Wallet Context")
        lines.append(_truncate_context(request.profile_context))
        lines.append("")

    if request.historical_tweets:
        lines.append("## Past Successful Tweets (for style reference)")
        lines.extend(f"- {tweet}" for tweet in request.historical_tweets[:DRAFT_HISTORY_LIMIT])
        lines.append("")

    if request.example_tweets:
        lines.append("## Example Tweets (best practices)")
        lines.extend(f"- {example}" for example in request.example_tweets)
        lines.append("")

    max_length = request.max_length if request.max_length > 0 else 280
    lines.append(f"Write a tweet about this fresh wallet trade in {max_length} characters or less.")
    lines.append("Include relevant emojis and the market/wallet URLs when helpful.")
    lines.append("Output ONLY the tweet text, nothing else.")
    return "\n".join(lines)


def build_review_prompt(draft: str, request: GenerationRequest) -> str:
    lines = ["## Original Draft Tweet", f'"{draft}"', "", "## Context"]

    trade = request.trade_event
    if trade is not None:
        lines.append(f"- Market: {trade.market_name}")
        lines.append(f"- Trade: {trade.side} {trade.outcome} @ {trade.price}")
    profile = request.wallet_profile
    if profile is not None:
        lines.append(
            f"- Wallet: {shorten_address(profile.address)} "
            f"(Bets: {profile.bet_count}, Freshness: {profile.freshness_level})"
        )
    lines.append(f"- Market URL: {request.market_url}")
    lines.append(f"- Wallet URL: {request.profile_url}")
    lines.append("")

    references = request.example_tweets[:REVIEW_EXAMPLE_LIMIT] + request.historical_tweets[:REVIEW_HISTORY_LIMIT]
    if references:
        lines.append("## Reference Tweets (match this style)")
        lines.extend(f"- {tweet}" for tweet in references)
        lines.append("")

    max_length = request.max_length if request.max_length > 0 else 280
    lines.extend(
        [
            "## Task",
            "Review and improve this tweet for:",
            "1. Clarity and accuracy, keeping every fact from the draft",
            "2. Engagement (hooks, emojis)",
            f"3. Keep under {max_length} characters",
            "4. Match the style of reference tweets",
            "",
            "Output ONLY the improved tweet, nothing else.",
        ]
    )
    return "\n".join(lines)


class ContentGenerator:
    """Two-step LLM pipeline: draft, then an optional editorial review."""

    def __init__(self, client: CompletionClient, *, timeout_seconds: float = Config.LLM_TIMEOUT_SEC) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def _complete(self, system_prompt: str, user_prompt: str) -> ChatResult:
        try:
            return await asyncio.wait_for(
                self.client.complete(system_prompt, user_prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise GenerationError(f"LLM call timed out after {self.timeout_seconds}s") from e

    async def generate_draft(self, request: GenerationRequest) -> tuple[str, int]:
        system_prompt = request.system_prompt or DEFAULT_SYSTEM_PROMPT
        result = await self._complete(system_prompt, build_draft_prompt(request))
        text = result.text.strip()
        if not text:
            raise GenerationError("draft is empty")
        return text, result.tokens

    async def review_and_refine(self, draft: str, request: GenerationRequest) -> tuple[str, int]:
        result = await self._complete(EDITOR_SYSTEM_PROMPT, build_review_prompt(draft, request))
        text = result.text.strip()
        if not text:
            raise GenerationError("review returned empty text")
        return text, result.tokens

    @staticmethod
    def should_review(request: GenerationRequest) -> bool:
        return bool(request.example_tweets or request.historical_tweets or request.review_enabled)

    async def generate(
        self,
        request: GenerationRequest,
        on_review: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> GenerationResponse:
        """Draft, maybe review, clamp.

        A draft failure raises GenerationError. A review failure keeps the
        draft as the final text; like every final text it is then clamped to
        max_length, so an over-long draft yields final_text != draft_text.
        """
        draft, tokens = await self.generate_draft(request)
        response = GenerationResponse(draft_text=draft, tokens_used=tokens)

        if self.should_review(request):
            if on_review is not None:
                await on_review()
            try:
                reviewed, review_tokens = await self.review_and_refine(draft, request)
            except GenerationError as e:
                logger.warning(f"Review failed, using draft: {e}")
                response.final_text = draft
                response.reasoning = "Review failed, using draft"
            else:
                response.reviewed_text = reviewed
                response.final_text = reviewed
                response.tokens_used += review_tokens
                response.reasoning = "Reviewed and refined"
        else:
            response.final_text = draft
            response.reasoning = "Review skipped, using draft"

        response.final_text = truncate_post(response.final_text, request.max_length)
        response.confidence = 1.0
        return response
