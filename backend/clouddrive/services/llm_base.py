"""Async LLM provider interface and implementations.

Both the google-genai and openai SDK clients are sync, so calls are
wrapped with asyncio.to_thread, retried on transient errors and bounded
by asyncio.wait_for.
"""
import asyncio
import base64
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, Type

from clouddrive.config import settings
from clouddrive.services.response_parser import strip_code_fences

logger = logging.getLogger(__name__)


class LLMTimeoutError(TimeoutError):
    """Raised when an LLM call exceeds the configured timeout."""
    pass


# Default timeouts (seconds) per call shape.
DEFAULT_TIMEOUTS = {
    "text_only": 60,
    "with_schema": 90,
    "with_image": 120,
}


class BaseLLMProvider(ABC):
    """Abstract base class for async LLM providers."""

    # Override in subclasses with provider-specific retryable exception types
    RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError)

    def __init__(self, api_key: str, model_name: str, temperature: float = 1.0):
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self._timeouts: dict = dict(DEFAULT_TIMEOUTS)

    def set_timeouts(self, timeouts: dict):
        self._timeouts.update(timeouts)

    def _get_timeout(self, *, has_image: bool = False, has_schema: bool = False) -> float:
        if has_image:
            return self._timeouts.get("with_image", DEFAULT_TIMEOUTS["with_image"])
        if has_schema:
            return self._timeouts.get("with_schema", DEFAULT_TIMEOUTS["with_schema"])
        return self._timeouts.get("text_only", DEFAULT_TIMEOUTS["text_only"])

    async def _with_retry(self, sync_fn, *args, max_retries: int = 3):
        """Run a sync SDK call in a thread with exponential backoff for transient errors.

        The caller wraps the returned coroutine with asyncio.wait_for so the
        overall timeout applies across all retries.
        """
        for attempt in range(max_retries + 1):
            try:
                return await asyncio.to_thread(sync_fn, *args)
            except self.RETRYABLE_EXCEPTIONS as e:
                if attempt == max_retries:
                    raise
                delay = (2 ** (attempt + 1)) + random.uniform(0, 1)
                logger.warning(
                    "LLM call failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, max_retries + 1, delay, e,
                )
                await asyncio.sleep(delay)

    async def _bounded(self, coro, timeout: float, label: str):
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise LLMTimeoutError(f"LLM {label} call timed out after {timeout}s")

    @abstractmethod
    async def generate(self, prompt: str, system_prompt: Optional[str] = None, **kwargs) -> str:
        pass

    @abstractmethod
    async def generate_json(
        self, prompt: str, system_prompt: Optional[str] = None,
        json_schema: Optional[Dict[str, Any]] = None, **kwargs,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def generate_with_image(
        self, prompt: str, image_bytes: bytes, mime_type: str = "image/png", **kwargs,
    ) -> str:
        """Generate content with an inline image. Returns raw text."""
        pass


class GeminiProvider(BaseLLMProvider):
    """Async Gemini provider using google-genai SDK.

    ``image_model_name`` is used for image calls; image models do not accept
    a JSON response mime type, so those calls return raw text.
    """

    def __init__(
        self,
        api_key: str,
        model_name: str = "",
        image_model_name: str = "",
        temperature: float = 1.0,
    ):
        super().__init__(api_key, model_name, temperature)
        self.image_model_name = image_model_name or model_name

        from google import genai
        try:
            from google.api_core.exceptions import ResourceExhausted, ServiceUnavailable
            self.RETRYABLE_EXCEPTIONS = (
                ResourceExhausted, ServiceUnavailable, ConnectionError, TimeoutError,
            )
        except ImportError:
            pass  # Fall back to base class defaults

        if not api_key:
            raise ValueError("GEMINI_API_KEY is not configured")
        self.client = genai.Client(api_key=api_key)

    def _config(self, system_prompt=None, json_schema=None):
        from google.genai import types

        config_dict: dict[str, Any] = {"temperature": self.temperature}
        if system_prompt:
            config_dict["system_instruction"] = system_prompt
        if json_schema:
            config_dict["response_mime_type"] = "application/json"
            config_dict["response_json_schema"] = json_schema
        return types.GenerateContentConfig(**config_dict)

    def _sync_generate(self, prompt, system_prompt):
        response = self.client.models.generate_content(
            model=self.model_name, contents=prompt, config=self._config(system_prompt),
        )
        return response.text or ""

    def _sync_generate_json(self, prompt, system_prompt, json_schema):
        response = self.client.models.generate_content(
            model=self.model_name,
            contents=prompt,
            config=self._config(system_prompt, json_schema or {"type": "object"}),
        )
        return json.loads(strip_code_fences(response.text or "{}"))

    def _sync_generate_with_image(self, prompt, image_bytes, mime_type):
        from google.genai import types

        image_part = types.Part.from_bytes(data=image_bytes, mime_type=mime_type)
        response = self.client.models.generate_content(
            model=self.image_model_name,
            contents=[image_part, prompt],
            config=self._config(),
        )
        return response.text or ""

    async def generate(self, prompt, system_prompt=None, **kwargs):
        timeout = self._get_timeout()
        return await self._bounded(
            self._with_retry(self._sync_generate, prompt, system_prompt), timeout, "generate",
        )

    async def generate_json(self, prompt, system_prompt=None, json_schema=None, **kwargs):
        timeout = self._get_timeout(has_schema=bool(json_schema))
        return await self._bounded(
            self._with_retry(self._sync_generate_json, prompt, system_prompt, json_schema),
            timeout, "generate_json",
        )

    async def generate_with_image(self, prompt, image_bytes, mime_type="image/png", **kwargs):
        timeout = self._get_timeout(has_image=True)
        return await self._bounded(
            self._with_retry(self._sync_generate_with_image, prompt, image_bytes, mime_type),
            timeout, "generate_with_image",
        )


class OpenAIProvider(BaseLLMProvider):
    """Async OpenAI provider."""

    def __init__(self, api_key: str, model_name: str = "", temperature: float = 1.0):
        super().__init__(api_key, model_name, temperature)
        from openai import OpenAI
        self.client = OpenAI(api_key=api_key)
        try:
            from openai import APIConnectionError, RateLimitError
            self.RETRYABLE_EXCEPTIONS = (
                RateLimitError, APIConnectionError, ConnectionError, TimeoutError,
            )
        except ImportError:
            pass  # Fall back to base class defaults

    @staticmethod
    def _messages(prompt, system_prompt, user_content=None):
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_content or prompt})
        return messages

    def _sync_generate(self, prompt, system_prompt):
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=self._messages(prompt, system_prompt),
            temperature=self.temperature,
        )
        return response.choices[0].message.content or ""

    def _sync_generate_json(self, prompt, system_prompt, json_schema):
        if json_schema:
            response_format = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": json_schema},
            }
        else:
            response_format = {"type": "json_object"}
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=self._messages(prompt, system_prompt),
            temperature=self.temperature,
            response_format=response_format,
        )
        return json.loads(strip_code_fences(response.choices[0].message.content or "{}"))

    def _sync_generate_with_image(self, prompt, image_bytes, mime_type):
        b64_data = base64.b64encode(image_bytes).decode("utf-8")
        content = [
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64_data}"}},
            {"type": "text", "text": prompt},
        ]
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=self._messages(prompt, None, user_content=content),
            temperature=self.temperature,
        )
        return response.choices[0].message.content or ""

    async def generate(self, prompt, system_prompt=None, **kwargs):
        timeout = self._get_timeout()
        return await self._bounded(
            self._with_retry(self._sync_generate, prompt, system_prompt), timeout, "generate",
        )

    async def generate_json(self, prompt, system_prompt=None, json_schema=None, **kwargs):
        timeout = self._get_timeout(has_schema=bool(json_schema))
        return await self._bounded(
            self._with_retry(self._sync_generate_json, prompt, system_prompt, json_schema),
            timeout, "generate_json",
        )

    async def generate_with_image(self, prompt, image_bytes, mime_type="image/png", **kwargs):
        timeout = self._get_timeout(has_image=True)
        return await self._bounded(
            self._with_retry(self._sync_generate_with_image, prompt, image_bytes, mime_type),
            timeout, "generate_with_image",
        )


def create_llm_provider(
    provider: str = "", api_key: str = "", model_name: str = "",
    image_model_name: str = "", temperature: Optional[float] = None,
) -> BaseLLMProvider:
    """Factory. Missing arguments fall back to settings."""
    provider = provider or settings.DEFAULT_LLM_PROVIDER
    temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
    if provider == "gemini":
        return GeminiProvider(
            api_key=api_key or settings.GEMINI_API_KEY,
            model_name=model_name or settings.GEMINI_MODEL,
            image_model_name=image_model_name or settings.GEMINI_IMAGE_MODEL,
            temperature=temperature,
        )
    elif provider == "openai":
        model = model_name or settings.OPENAI_MODEL
        if not model:
            raise ValueError("OPENAI_MODEL is not configured")
        return OpenAIProvider(
            api_key=api_key or settings.OPENAI_API_KEY, model_name=model, temperature=temperature,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")
