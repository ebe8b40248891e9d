from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse, urlunparse

import openai
from openai import AsyncOpenAI

from roguemind.envutil import env_bool, env_float, env_int, env_str
from roguemind.errors import ConfigurationError, OracleError, ResponseParseError, TransientNetworkError


LOGGER = logging.getLogger("roguemind.llm.client")

DEFAULT_BASE_URL = "https://api.deepseek.com/v1"
DEFAULT_MODEL = "deepseek-chat"
DEFAULT_PREFS_PATH = "~/.roguemind/prefs.json"

SYSTEM_PROMPT = (
    "You are the tactical advisor of an agent in a cooperative survival roguelike. "
    "Weigh the agent's needs, mood, surroundings and team messages; "
    "put survival first, then exploration and growth, and stay in character."
)


def normalize_base_url(raw: str) -> str:
    """Accept either an API root or a full chat-completions endpoint."""
    value = raw.strip()
    if not value:
        return DEFAULT_BASE_URL
    parsed = urlparse(value)
    path = parsed.path.rstrip("/")
    if path.endswith("/chat/completions"):
        path = path[: -len("/chat/completions")]
    return urlunparse(parsed._replace(path=path)).rstrip("/")


def load_stored_api_key(path: str | None) -> str | None:
    if not path:
        return None
    prefs_path = Path(path).expanduser()
    try:
        raw = prefs_path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("ignoring unreadable prefs file path=%s", prefs_path)
        return None
    if not isinstance(data, dict):
        return None
    key = data.get("api_key")
    if isinstance(key, str) and key.strip():
        return key.strip()
    return None


def resolve_api_key(explicit: str | None, prefs_path: str | None) -> str | None:
    if explicit and explicit.strip():
        return explicit.strip()
    stored = load_stored_api_key(prefs_path)
    if stored:
        return stored
    for name in ("ORACLE_API_KEY", "DEEPSEEK_API_KEY"):
        value = env_str(name)
        if value:
            return value
    return None


@dataclass
class OracleClient:
    enabled: bool
    base_url: str
    model: str
    api_key: str | None
    temperature: float = 0.7
    max_tokens: int = 500
    top_p: float = 0.95
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    timeout_sec: float = 30.0
    max_retries: int = 2
    retry_delay_sec: float = 1.0
    debug: bool = False
    system_prompt: str = SYSTEM_PROMPT
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)
    _sdk_client: AsyncOpenAI | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls, api_key: str | None = None) -> "OracleClient":
        enabled = env_bool("ORACLE_ENABLED", False)
        base_url = normalize_base_url(os.getenv("ORACLE_BASE_URL", DEFAULT_BASE_URL))
        model = env_str("ORACLE_MODEL", DEFAULT_MODEL)
        resolved_key = resolve_api_key(api_key, os.getenv("ORACLE_PREFS_PATH", DEFAULT_PREFS_PATH))

        return cls(
            enabled=enabled and bool(model) and bool(resolved_key),
            base_url=base_url,
            model=model,
            api_key=resolved_key,
            temperature=env_float("ORACLE_TEMPERATURE", 0.7, 0.0, 2.0),
            max_tokens=env_int("ORACLE_MAX_TOKENS", 500, 16, 8000),
            top_p=env_float("ORACLE_TOP_P", 0.95, 0.0, 1.0),
            frequency_penalty=env_float("ORACLE_FREQUENCY_PENALTY", 0.0, -2.0, 2.0),
            presence_penalty=env_float("ORACLE_PRESENCE_PENALTY", 0.0, -2.0, 2.0),
            timeout_sec=env_float("ORACLE_TIMEOUT_SEC", 30.0, 1.0, 180.0),
            max_retries=env_int("ORACLE_MAX_RETRIES", 2, 0, 5),
            retry_delay_sec=env_float("ORACLE_RETRY_DELAY_SEC", 1.0, 0.0, 30.0),
            debug=env_bool("ORACLE_DEBUG", False),
        )

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.api_key) and bool(self.model)

    @property
    def attempt_timeout_sec(self) -> float:
        """Per-attempt share of ``timeout_sec`` once the backoff delays are set aside."""
        attempts = self.max_retries + 1
        backoff = self.retry_delay_sec * self.max_retries * attempts / 2
        if backoff >= self.timeout_sec:
            return self.timeout_sec / attempts
        return (self.timeout_sec - backoff) / attempts

    def _get_sdk_client(self) -> AsyncOpenAI:
        if self._sdk_client is None:
            # retries are ours, so the SDK must not retry on its own
            self._sdk_client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.attempt_timeout_sec,
                max_retries=0,
            )
        return self._sdk_client

    def _debug(self, message: str) -> None:
        if self.debug:
            LOGGER.warning(message)

    def build_request(self, user_prompt: str, system_prompt: str | None = None) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt or self.system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
            "stream": False,
        }

    async def complete(self, user_prompt: str, system_prompt: str | None = None) -> str:
        """Return the assistant text or raise an ``OracleError`` subclass."""
        if not self.configured:
            raise ConfigurationError("oracle disabled or missing api key/model")

        request = self.build_request(user_prompt, system_prompt)
        try:
            return await asyncio.wait_for(self._complete_with_retries(request), timeout=self.timeout_sec)
        except asyncio.TimeoutError as exc:
            self._debug(f"oracle request exceeded overall timeout={self.timeout_sec}s")
            raise TransientNetworkError("overall timeout exceeded") from exc

    async def _complete_with_retries(self, request: dict[str, Any]) -> str:
        attempt = 0
        while True:
            try:
                return await self._attempt(request)
            except TransientNetworkError as exc:
                if attempt >= self.max_retries:
                    self._debug(f"oracle giving up after {attempt + 1} attempts status={exc.status_code}")
                    raise
                delay = self.retry_delay_sec * (attempt + 1)
                self._debug(f"oracle transient failure status={exc.status_code} retry in {delay:.1f}s")
                attempt += 1
                await self.sleep(delay)

    async def _attempt(self, request: dict[str, Any]) -> str:
        try:
            response = await asyncio.wait_for(
                self._get_sdk_client().chat.completions.create(**request, timeout=self.attempt_timeout_sec),
                timeout=self.attempt_timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError("request timed out") from exc
        except openai.RateLimitError as exc:
            raise TransientNetworkError("rate limited by provider", status_code=429) from exc
        except openai.APITimeoutError as exc:
            raise TransientNetworkError("request timed out") from exc
        except openai.APIConnectionError as exc:
            raise TransientNetworkError(f"connection failed: {exc}") from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientNetworkError(f"server error {exc.status_code}", status_code=exc.status_code) from exc
            raise OracleError(f"request rejected status={exc.status_code}: {exc.message}") from exc

        return self._extract_content(response)

    def _extract_content(self, response: Any) -> str:
        try:
            as_dict = response.model_dump()
        except Exception:
            as_dict = response if isinstance(response, dict) else {}

        error = as_dict.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else str(error)
            self._debug(f"oracle body error={error!r}")
            raise OracleError(f"provider error: {detail}")

        choices = as_dict.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ResponseParseError("response has no choices")
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ResponseParseError("response has no assistant text")

        self._debug(f"oracle response prefix={content[:280]!r}")
        return content.strip()
