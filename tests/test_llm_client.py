import asyncio
import dataclasses
from types import SimpleNamespace

import httpx
import openai
import pytest

from taskpilot.config import load_config
from taskpilot.core.cancellation import RunCancelled
from taskpilot.llm.client import LLMUnavailable, OpenAIClient


def _response(content="hello", tokens=1000):
    usage = SimpleNamespace(total_tokens=tokens) if tokens is not None else None
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=usage,
    )


def _connection_error():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.example.test"))


class FakeCompletions:
    def __init__(self, *items):
        self.items = list(items)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, BaseException):
            raise item
        return item


def _client(*items, **overrides):
    completions = FakeCompletions(*items)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    settings = {"model": "test-model", "llm_max_attempts": 3, "llm_backoff_seconds": 0.0}
    settings.update(overrides)
    cfg = dataclasses.replace(load_config(), **settings)
    return OpenAIClient(cfg, client=fake), completions


@pytest.mark.asyncio
async def test_complete_returns_content_and_tracks_cost():
    client, completions = _client(_response("hi there", tokens=2000))

    text = await client.complete([{"role": "user", "content": "hi"}], temperature=0.3)

    assert text == "hi there"
    assert completions.calls[0]["model"] == "test-model"
    assert completions.calls[0]["temperature"] == 0.3
    assert completions.calls[0]["messages"] == [{"role": "user", "content": "hi"}]
    assert client.total_tokens == 2000
    assert client.total_cost == pytest.approx(0.0003)


@pytest.mark.asyncio
async def test_empty_content_and_missing_usage():
    client, _ = _client(_response(None, tokens=None))

    assert await client.complete([]) == ""
    assert client.total_tokens == 0


@pytest.mark.asyncio
async def test_transient_error_is_retried():
    client, completions = _client(_connection_error(), _response("recovered"))

    assert await client.complete([]) == "recovered"
    assert len(completions.calls) == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    client, completions = _client(_connection_error())

    with pytest.raises(LLMUnavailable):
        await client.complete([])
    assert len(completions.calls) == 3


@pytest.mark.asyncio
async def test_non_transient_error_is_not_retried():
    client, completions = _client(ValueError("bad request"))

    with pytest.raises(ValueError):
        await client.complete([])
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_cancelled_before_first_attempt():
    client, completions = _client(_response())
    event = asyncio.Event()
    event.set()

    with pytest.raises(RunCancelled):
        await client.complete([], cancel_event=event)
    assert completions.calls == []


@pytest.mark.asyncio
async def test_cancel_interrupts_backoff():
    client, completions = _client(_connection_error(), llm_backoff_seconds=30.0)
    event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, event.set)

    with pytest.raises(RunCancelled):
        await asyncio.wait_for(client.complete([], cancel_event=event), timeout=5)
    assert len(completions.calls) == 1


def test_requires_api_key_without_injected_client():
    cfg = dataclasses.replace(load_config(), openai_api_key=None)
    with pytest.raises(RuntimeError):
        OpenAIClient(cfg)
