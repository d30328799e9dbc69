"""Language model gateway for engine ticks.

One request/response call per tick: a system/user prompt pair in, JSON text
out. The engine only depends on the ``LanguageModelGateway`` protocol; the
OpenAI implementation is the production wiring.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import ValidationError

from coach_engine.core.config import get_settings
from coach_engine.core.logging import get_logger
from coach_engine.core.schemas_support import CoachResponse

logger = get_logger(__name__)


@dataclass
class LlmResult:
    """Result of one gateway call."""

    text: str
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""
    duration_ms: int = 0


class LanguageModelGateway(Protocol):
    """Single-call model interface the engine consumes."""

    @property
    def available(self) -> bool: ...

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        json_mode: bool = True,
        temperature: float = 0.5,
        billing: dict[str, Any] | None = None,
    ) -> LlmResult: ...


class OpenAIGateway:
    """OpenAI chat completions gateway with fire-and-forget usage logging."""

    def __init__(self, api_key: str, provider: str = "openai", base_url: str | None = None):
        self._api_key = api_key
        self._provider = provider.strip().lower()
        self._base_url = base_url
        self._client: AsyncOpenAI | None = None

    @classmethod
    def from_settings(cls) -> "OpenAIGateway":
        settings = get_settings()
        gateway = cls(
            api_key=settings.OPENAI_API_KEY,
            provider=settings.LLM_PROVIDER,
            base_url=settings.OPENAI_BASE_URL,
        )
        if gateway.available:
            logger.info(f"LLM ready: provider={gateway._provider}, model={settings.LLM_MODEL}")
        else:
            logger.warning(
                "LLM not configured, suggestions will use deterministic fallbacks "
                "(set LLM_PROVIDER=openai and OPENAI_API_KEY)"
            )
        return gateway

    @property
    def available(self) -> bool:
        return bool(self._api_key) and self._provider == "openai"

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        json_mode: bool = True,
        temperature: float = 0.5,
        billing: dict[str, Any] | None = None,
    ) -> LlmResult:
        """
        Run one chat completion.

        Raises:
            openai.OpenAIError: On transport or API failure (the engine treats
                this as a fallback condition)
        """
        client = self._get_client()
        started = time.monotonic()

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await client.chat.completions.create(**kwargs)

        duration_ms = int((time.monotonic() - started) * 1000)
        text = (response.choices[0].message.content or "").strip()
        usage = {
            "prompt_tokens": getattr(response.usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(response.usage, "completion_tokens", 0) or 0,
        }

        if billing is not None:
            _schedule_usage_log(model, usage, duration_ms, billing)

        return LlmResult(text=text, usage=usage, model=model, duration_ms=duration_ms)


def _schedule_usage_log(
    model: str, usage: dict[str, int], duration_ms: int, billing: dict[str, Any]
) -> None:
    from coach_engine.core.llm_usage import log_llm_usage

    asyncio.get_running_loop().run_in_executor(
        None,
        lambda: log_llm_usage(
            ledger_type=billing.get("ledger_type", "USAGE_LLM_SUPPORT_ENGINE_TICK"),
            model=model,
            provider="openai",
            tokens_input=usage.get("prompt_tokens", 0),
            tokens_output=usage.get("completion_tokens", 0),
            duration_ms=duration_ms,
            org_id=billing.get("org_id"),
            metadata=billing.get("metadata"),
        ),
    )


# =============================================================================
# Output parsing
# =============================================================================


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    # Fall back to the outermost object when prose surrounds it
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start : end + 1]
    return cleaned


def parse_llm_json_dict(raw_output: str) -> dict:
    """
    Parse LLM output as JSON, returning a raw dict.

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        ValueError: If the JSON is not an object
    """
    parsed = json.loads(_strip_llm_fences(raw_output))
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected JSON object, got {type(parsed).__name__}")
    return parsed


def parse_coach_response(raw_output: str, fallback: CoachResponse | None = None) -> CoachResponse:
    """
    Parse a tick response, never raising.

    Args:
        raw_output: Raw model text
        fallback: Returned unchanged when parsing fails (defaults to empty)

    Returns:
        Parsed CoachResponse or the fallback
    """
    try:
        return CoachResponse.model_validate(parse_llm_json_dict(raw_output))
    except (json.JSONDecodeError, ValueError, ValidationError) as e:
        logger.warning(f"LLM JSON parse failed: {raw_output[:120]!r} ({e})")
        return fallback if fallback is not None else CoachResponse()
