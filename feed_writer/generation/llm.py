"""
LLM client (OpenAI-compatible API)

JSON mode + pydantic 驗證的 structured output。
Provider 的失敗一律轉為 ProviderError / RateLimitError，並標記發生的 step。
"""

import json
from typing import Optional, Type, TypeVar
import logging

import openai
from openai import OpenAI
from pydantic import BaseModel, ValidationError

from feed_writer.config import LLMConfig
from feed_writer.errors import ProviderError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def _retry_after(error: openai.RateLimitError) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class LLMClient:
    """OpenAI-compatible chat completion client"""

    def __init__(self, config: LLMConfig, api_key: str, client: Optional[OpenAI] = None):
        """
        初始化 LLMClient

        Args:
            config: LLM 設定
            api_key: API key (由呼叫端從環境變數取得)
            client: 既有的 OpenAI client (測試用)
        """
        self.config = config
        self.model = config.model
        self.client = client or OpenAI(
            base_url=config.base_url,
            api_key=api_key,
            timeout=config.timeout_seconds,
        )

    def _complete(self, messages: list, step: str, json_mode: bool) -> str:
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**kwargs)
        except openai.RateLimitError as e:
            logger.error(f"✗ Rate limited during {step}: {e}")
            raise RateLimitError(str(e), step=step, retry_after_seconds=_retry_after(e)) from e
        except openai.APIError as e:
            logger.error(f"✗ LLM request failed during {step}: {e}")
            raise ProviderError(f"LLM request failed: {e}", step=step) from e

        content = response.choices[0].message.content
        if not content:
            raise ProviderError("LLM returned an empty response", step=step)
        return content

    def call(self, prompt: str, system: Optional[str] = None, step: str = "generate") -> str:
        """Raw text response"""
        return self._complete(self._build_messages(prompt, system), step, json_mode=False)

    def call_structured(
        self,
        prompt: str,
        response_model: Type[T],
        system: Optional[str] = None,
        step: str = "generate"
    ) -> T:
        """
        JSON mode 呼叫並以 pydantic model 驗證

        Raises:
            ProviderError: JSON 無法解析或不符 schema
        """
        raw = self._complete(self._build_messages(prompt, system), step, json_mode=True)

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"LLM returned invalid JSON during {step}: {raw[:300]}")
            raise ProviderError(f"LLM returned invalid JSON: {e}", step=step, partial=raw) from e

        try:
            return response_model.model_validate(parsed)
        except ValidationError as e:
            logger.error(f"Response validation failed for {response_model.__name__}: {parsed}")
            raise ProviderError(
                f"LLM response does not match {response_model.__name__}: {e.error_count()} error(s)",
                step=step,
                partial=parsed
            ) from e

    @staticmethod
    def _build_messages(prompt: str, system: Optional[str]) -> list:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages
