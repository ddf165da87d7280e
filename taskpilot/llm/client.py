import asyncio
import time
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from taskpilot.config import TaskpilotConfig, load_config
from taskpilot.core.cancellation import RunCancelled, raise_if_cancelled
from taskpilot.infra.logging import log_event

Message = Dict[str, str]

# Worth another attempt; anything else (auth, bad request) is surfaced at once.
_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class LLMUnavailable(RuntimeError):
    """Raised when every attempt to reach the model failed."""


class LLMClient:
    """
    The planner/evaluator capability: send a conversation, get text back.

    Stateless per call; the caller supplies the full context every time.
    """

    async def complete(
        self,
        messages: List[Message],
        *,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: Optional[float] = None,
    ) -> str:
        raise NotImplementedError


class OpenAIClient(LLMClient):
    def __init__(self, config: Optional[TaskpilotConfig] = None, *, client: Any = None):
        cfg = config or load_config()

        self.max_attempts = cfg.llm_max_attempts
        self.base_backoff_seconds = cfg.llm_backoff_seconds
        self.model = cfg.model
        self.default_temperature = 0.0

        if client is None:
            if not cfg.openai_api_key:
                raise RuntimeError("OPENAI_API_KEY is not set")
            client = AsyncOpenAI(api_key=cfg.openai_api_key, base_url=cfg.openai_base_url)
        self.client = client

        # Cost tracking
        self.total_tokens = 0
        self.total_cost = 0.0
        self.cost_per_1k_tokens = 0.00015  # example, update as pricing changes

    async def complete(
        self,
        messages: List[Message],
        *,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        One chat completion, retried with backoff on transient API failures.

        The cancel event is checked before every attempt and interrupts backoff.
        """
        temp = self.default_temperature if temperature is None else temperature
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            raise_if_cancelled(cancel_event)
            log_event(
                "llm_attempt",
                attempt=attempt,
                max_attempts=self.max_attempts,
                model=self.model,
                temperature=temp,
            )

            try:
                response = await self._call_openai(messages, temp)
            except _TRANSIENT_ERRORS as e:
                last_error = e
                log_event(
                    "llm_transient_error",
                    level="warning",
                    attempt=attempt,
                    error_type=type(e).__name__,
                )
                if attempt < self.max_attempts:
                    await self._backoff(attempt, cancel_event)
                continue

            self._track_usage(response)
            content = response.choices[0].message.content
            return content or ""

        raise LLMUnavailable(
            f"LLM failed after {self.max_attempts} attempts"
        ) from last_error

    async def _call_openai(self, messages: List[Message], temperature: float) -> Any:
        """
        Single responsibility:
        - Make the OpenAI API call
        - Return the raw response
        """
        start = time.time()

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
        )

        log_event("llm_latency", seconds=time.time() - start)
        return response

    def _track_usage(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", None) or 0
        cost = (tokens_used / 1000) * self.cost_per_1k_tokens

        self.total_tokens += tokens_used
        self.total_cost += cost

        log_event(
            "llm_usage",
            tokens=tokens_used,
            cost=cost,
            total_tokens=self.total_tokens,
            total_cost=self.total_cost,
        )

    async def _backoff(self, attempt: int, cancel_event: Optional[asyncio.Event]) -> None:
        """
        Exponential backoff; returns early (by raising) if the run is cancelled meanwhile.
        """
        delay = self.base_backoff_seconds * (2 ** (attempt - 1))
        log_event("llm_backoff", delay=delay)

        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RunCancelled("Run cancelled during LLM backoff")
