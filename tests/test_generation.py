import asyncio
import json

import httpx
import pytest

from actionbot.errors import GenerationError
from actionbot.generation import ChatClient, ChatResult, ContentGenerator, GenerationRequest, truncate_post
from actionbot.generation.agent import (
    DEFAULT_SYSTEM_PROMPT,
    EDITOR_SYSTEM_PROMPT,
    build_draft_prompt,
    build_review_prompt,
)
from actionbot.store.schemas import TradeEvent, WalletProfile


class FakeChat:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, system_prompt: str, user_prompt: str) -> ChatResult:
        self.calls.append((system_prompt, user_prompt))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class SlowChat:
    async def complete(self, system_prompt: str, user_prompt: str) -> ChatResult:
        await asyncio.sleep(1)
        return ChatResult("too late", 1)


def make_request(**kw) -> GenerationRequest:
    fields = dict(
        wallet_profile=WalletProfile(
            address="0x1234567890abcdef1234567890abcdef12345678",
            bet_count=2,
            freshness_level="insider",
            join_date="Jan 2025",
        ),
        trade_event=TradeEvent(market_name="Will it rain?", event_title="Weather", side="BUY",
                               outcome="Yes", price="0.42", size="1500"),
        market_url="https://polymarket.com/event/will-it-rain",
        profile_url="https://polymarket.com/profile/0x1234567890abcdef1234567890abcdef12345678",
        review_enabled=False,
    )
    fields.update(kw)
    return GenerationRequest(**fields)


# ==== truncate_post ====

def test_truncate_post_leaves_short_text():
    text = "a" * 280
    assert truncate_post(text, 280) == text


def test_truncate_post_without_spaces_hits_limit_exactly():
    out = truncate_post("a" * 400, 280)
    assert len(out) == 280
    assert out.endswith("...")


def test_truncate_post_cuts_at_word_boundary_past_half():
    text = ("word " * 100).strip()
    out = truncate_post(text, 280)
    assert len(out) <= 280
    assert out.endswith("word...")


def test_truncate_post_ignores_space_before_half():
    text = "short " + "x" * 400
    out = truncate_post(text, 280)
    assert len(out) == 280
    assert out.startswith("short xxx")


def test_truncate_post_non_positive_limit_uses_default():
    assert len(truncate_post("y" * 500, 0)) == 280


# ==== prompts ====

def test_draft_prompt_limits_history_and_truncates_context():
    request = make_request(
        historical_tweets=["h1", "h2", "h3", "h4"],
        example_tweets=["e1", "e2", "e3"],
        market_context="c" * 800,
    )
    prompt = build_draft_prompt(request)

    assert "- h3" in prompt and "- h4" not in prompt
    assert "- e1" in prompt and "- e3" in prompt
    assert "c" * 500 + "..." in prompt
    assert "c" * 501 not in prompt
    assert "**Wallet**: 0x1234...5678" in prompt
    assert "**Joined**: Jan 2025" in prompt
    assert "280 characters or less" in prompt


def test_review_prompt_uses_two_examples_and_two_history():
    request = make_request(historical_tweets=["h1", "h2", "h3"], example_tweets=["e1", "e2", "e3"])
    prompt = build_review_prompt("my draft", request)

    assert '"my draft"' in prompt
    for present in ("- e1", "- e2", "- h1", "- h2"):
        assert present in prompt
    assert "- e3" not in prompt and "- h3" not in prompt


# ==== ContentGenerator ====

def test_should_review():
    assert ContentGenerator.should_review(make_request()) is False
    assert ContentGenerator.should_review(make_request(example_tweets=["e"])) is True
    assert ContentGenerator.should_review(make_request(historical_tweets=["h"])) is True
    assert ContentGenerator.should_review(make_request(review_enabled=True)) is True


@pytest.mark.asyncio
async def test_generate_without_review_uses_draft():
    chat = FakeChat([ChatResult("  Fresh wallet apes in!  ", 12)])
    gen = ContentGenerator(chat)

    resp = await gen.generate(make_request())

    assert resp.draft_text == "Fresh wallet apes in!"
    assert resp.final_text == "Fresh wallet apes in!"
    assert resp.reviewed_text == ""
    assert resp.tokens_used == 12
    assert resp.confidence == 1.0
    assert len(chat.calls) == 1
    assert chat.calls[0][0] == DEFAULT_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_generate_with_review_sums_tokens_and_calls_hook():
    chat = FakeChat([ChatResult("draft", 10), ChatResult("polished", 15)])
    gen = ContentGenerator(chat)
    hook_calls = []

    async def on_review():
        hook_calls.append(True)

    resp = await gen.generate(make_request(review_enabled=True, system_prompt="custom persona"), on_review=on_review)

    assert resp.final_text == "polished"
    assert resp.reviewed_text == "polished"
    assert resp.draft_text == "draft"
    assert resp.tokens_used == 25
    assert hook_calls == [True]
    assert chat.calls[0][0] == "custom persona"
    assert chat.calls[1][0] == EDITOR_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_review_failure_falls_back_to_draft():
    chat = FakeChat([ChatResult("draft text", 10), GenerationError("editor down")])
    gen = ContentGenerator(chat)

    resp = await gen.generate(make_request(example_tweets=["ex"]))

    assert resp.final_text == resp.draft_text == "draft text"
    assert resp.reviewed_text == ""
    assert resp.tokens_used == 10
    assert resp.reasoning == "Review failed, using draft"


@pytest.mark.asyncio
async def test_review_failure_with_long_draft_clamps_final_only():
    long_draft = " ".join(["word"] * 80)
    chat = FakeChat([ChatResult(long_draft, 10), GenerationError("editor down")])
    gen = ContentGenerator(chat)

    resp = await gen.generate(make_request(example_tweets=["ex"], max_length=100))

    assert resp.draft_text == long_draft
    assert resp.final_text == truncate_post(long_draft, 100)
    assert len(resp.final_text) <= 100
    assert resp.final_text.endswith("...")
    assert resp.reasoning == "Review failed, using draft"


@pytest.mark.asyncio
async def test_draft_failure_raises():
    gen = ContentGenerator(FakeChat([GenerationError("llm down")]))
    with pytest.raises(GenerationError):
        await gen.generate(make_request())


@pytest.mark.asyncio
async def test_blank_draft_raises():
    gen = ContentGenerator(FakeChat([ChatResult("   ", 3)]))
    with pytest.raises(GenerationError):
        await gen.generate(make_request())


@pytest.mark.asyncio
async def test_final_text_is_clamped():
    chat = FakeChat([ChatResult("draft", 1), ChatResult("z" * 400, 1)])
    gen = ContentGenerator(chat)

    resp = await gen.generate(make_request(review_enabled=True, max_length=100))

    assert len(resp.final_text) == 100
    assert resp.final_text.endswith("...")


@pytest.mark.asyncio
async def test_llm_timeout_becomes_generation_error():
    gen = ContentGenerator(SlowChat(), timeout_seconds=0.01)
    with pytest.raises(GenerationError):
        await gen.generate(make_request())


# ==== ChatClient ====

def chat_client(handler, **kw) -> ChatClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatClient(
        base_url="https://llm.test/v1",
        api_key="sk-test",
        model="gpt-4o-mini",
        max_tokens=500,
        http_client=http,
        **kw,
    )


@pytest.mark.asyncio
async def test_chat_client_parses_content_and_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = request.read()
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": "hello"}}],
            "usage": {"total_tokens": 33},
        })

    result = await chat_client(handler).complete("sys", "user")

    assert result == ChatResult("hello", 33)
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    payload = json.loads(seen["body"])
    assert payload["model"] == "gpt-4o-mini"
    assert payload["max_tokens"] == 500
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body",
    [
        (400, {"error": {"message": "bad request"}}),
        (200, {"choices": []}),
        (200, {"choices": [{"message": {"content": "  "}}]}),
        (500, {"detail": "oops"}),
    ],
)
async def test_chat_client_errors(status, body):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body)

    with pytest.raises(GenerationError):
        await chat_client(handler).complete("sys", "user")


@pytest.mark.asyncio
async def test_chat_client_requires_api_key():
    client = ChatClient(base_url="https://llm.test/v1", api_key="")
    with pytest.raises(GenerationError):
        await client.complete("sys", "user")
