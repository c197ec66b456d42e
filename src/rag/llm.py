from __future__ import annotations

"""Language-model clients that turn a prepared prompt into answer text."""

from dataclasses import dataclass, field
import asyncio
from typing import Any, Protocol

import httpx

from src.rag.prompts import Prompt


class LLMError(RuntimeError):
    """Raised when LLM requests fail or responses are invalid."""
    pass


class LLMTimeoutError(LLMError):
    """Raised when the provider does not answer within its timeout."""
    pass

LLM_REMEDIES = (
    "Check the language model API key configuration",
    "Verify API quota and billing",
    "Try again in a few moments",
    "Contact support if the issue persists",
)


@dataclass(frozen=True)
class LLMResult:
    """Answer text returned by a provider."""
    answer: str
    provider: str
    model: str
    raw: str
    usage: dict[str, Any] = field(default_factory=dict)


class Answerer(Protocol):
    async def generate(self, prompt: Prompt, max_tokens: int | None = None) -> LLMResult:
        raise NotImplementedError


@dataclass(frozen=True)
class OllamaAnswerer:
    """LLM answerer backed by Ollama chat API."""
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    async def generate(self, prompt: Prompt, max_tokens: int | None = None) -> LLMResult:
        """Generate an answer using Ollama."""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "num_predict": max_tokens or self.max_tokens,
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(f"LLM request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc
        message = data.get("message") or {}
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise LLMError("Invalid LLM response")
        usage = {
            key: data[key] for key in ("prompt_eval_count", "eval_count") if isinstance(data.get(key), int)
        }
        return LLMResult(answer=content.strip(), provider="ollama", model=self.model, raw=content, usage=usage)


@dataclass(frozen=True)
class OpenAIAnswerer:
    """LLM answerer backed by OpenAI chat completions."""
    api_key: str
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    async def generate(self, prompt: Prompt, max_tokens: int | None = None) -> LLMResult:
        """Generate an answer using OpenAI chat completions."""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "temperature": self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "presence_penalty": 0.1,
            "frequency_penalty": 0.1,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(f"LLM request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc

        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Invalid OpenAI response")
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise LLMError("Invalid OpenAI response content")
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return LLMResult(answer=content.strip(), provider="openai", model=self.model, raw=content, usage=usage)


@dataclass(frozen=True)
class GeminiAnswerer:
    """LLM answerer backed by Gemini generative models."""
    api_key: str
    model: str
    temperature: float
    max_tokens: int
    timeout: float

    async def generate(self, prompt: Prompt, max_tokens: int | None = None) -> LLMResult:
        """Generate an answer using Gemini."""
        try:
            import google.generativeai as genai
        except ImportError as exc:
            raise LLMError("google-generativeai is required for GeminiAnswerer") from exc

        text = f"{prompt.system}\n\n{prompt.user}"

        def _run() -> str:
            genai.configure(api_key=self.api_key)
            model = genai.GenerativeModel(self.model)
            response = model.generate_content(
                text,
                generation_config={
                    "temperature": self.temperature,
                    "max_output_tokens": max_tokens or self.max_tokens,
                },
            )
            return getattr(response, "text", "") or ""

        try:
            content = await asyncio.wait_for(asyncio.to_thread(_run), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise LLMTimeoutError(f"LLM request timed out after {self.timeout:g}s") from exc
        except Exception as exc:
            raise LLMError(str(exc)) from exc
        if not content.strip():
            raise LLMError("Empty Gemini response")
        return LLMResult(answer=content.strip(), provider="gemini", model=self.model, raw=content)


def check_llm_config(
    provider: str,
    *,
    api_key_openai: str | None,
    api_key_gemini: str | None,
    openai_model: str | None,
    gemini_model: str | None,
    ollama_model: str | None,
) -> dict[str, Any]:
    """Report whether the configured provider has what it needs, without calling it."""
    normalized = provider.strip().lower()
    if normalized in {"", "extractive", "none"}:
        return {"ok": True, "provider": "extractive"}
    if normalized == "openai":
        if not api_key_openai:
            return {"ok": False, "provider": "openai", "detail": "OPENAI_API_KEY is not set"}
        return {"ok": bool(openai_model), "provider": "openai", "model": openai_model}
    if normalized in {"gemini", "google"}:
        if not api_key_gemini:
            return {"ok": False, "provider": "gemini", "detail": "GEMINI_API_KEY is not set"}
        return {"ok": bool(gemini_model), "provider": "gemini", "model": gemini_model}
    if normalized == "ollama":
        return {"ok": bool(ollama_model), "provider": "ollama", "model": ollama_model}
    return {"ok": False, "provider": normalized, "detail": "Unsupported LLM provider"}


def build_llm_answerer(
    provider: str,
    *,
    api_key_openai: str | None,
    api_key_gemini: str | None,
    openai_base_url: str,
    openai_model: str | None,
    gemini_model: str | None,
    ollama_base_url: str,
    ollama_model: str,
    temperature: float,
    max_tokens: int,
    timeout: float,
) -> OllamaAnswerer | OpenAIAnswerer | GeminiAnswerer:
    """Factory for LLM answerers based on provider."""
    normalized = provider.strip().lower()
    if normalized in {"openai"}:
        if not api_key_openai:
            raise LLMError("OPENAI_API_KEY is required for OpenAI provider")
        if not openai_model:
            raise LLMError("OPENAI_CHAT_MODEL is required for OpenAI provider")
        return OpenAIAnswerer(
            api_key=api_key_openai,
            base_url=openai_base_url.rstrip("/"),
            model=openai_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    if normalized in {"gemini", "google"}:
        if not api_key_gemini:
            raise LLMError("GEMINI_API_KEY is required for Gemini provider")
        if not gemini_model:
            raise LLMError("GEMINI_CHAT_MODEL is required for Gemini provider")
        return GeminiAnswerer(
            api_key=api_key_gemini,
            model=gemini_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    return OllamaAnswerer(
        base_url=ollama_base_url.rstrip("/"),
        model=ollama_model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )
