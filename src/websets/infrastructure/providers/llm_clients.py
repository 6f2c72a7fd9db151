"""LLM clients: OpenAI chat-completions family, Anthropic messages, Gemini."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from websets.domain.errors import PermanentProviderError
from websets.domain.provider import ProviderConfig, ProviderRequest, ProviderResponse
from websets.infrastructure.providers.base import HttpProviderClient

_OPENAI_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "vercel-ai": "https://ai-gateway.vercel.sh/v1",
}


def _split_system(messages: List[Dict[str, str]]) -> Tuple[str, List[Dict[str, str]]]:
    system = "\n\n".join(m.get("content", "") for m in messages if m.get("role") == "system")
    rest = [m for m in messages if m.get("role") != "system"]
    return system, rest


def _malformed(config: ProviderConfig, what: str) -> PermanentProviderError:
    return PermanentProviderError(f"{config.name}: malformed response ({what})", provider_id=config.id)


class OpenAIChatClient(HttpProviderClient):
    """Any provider speaking the ``/chat/completions`` wire format."""

    default_model = "gpt-4o-mini"

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResponse:
        base_url = (config.endpoint or _OPENAI_BASE_URLS.get(config.type) or "").rstrip("/")
        if not base_url:
            raise PermanentProviderError(
                f"{config.name}: endpoint is required for {config.type}", provider_id=config.id
            )
        model = request.model or config.options.get("default_model") or self.default_model
        body: Dict[str, Any] = {"model": model, "messages": request.messages, "stream": False}
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        data = await self.request_json(
            config, "POST", f"{base_url}/chat/completions", headers=headers, json_body=body
        )
        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError):
            raise _malformed(config, "no choices")
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            model=str(data.get("model") or model),
            tokens_used=usage.get("total_tokens"),
            metadata={"id": data.get("id"), "finish_reason": data["choices"][0].get("finish_reason")},
        )


class ClaudeClient(HttpProviderClient):
    default_model = "claude-3-5-sonnet-latest"
    api_version = "2023-06-01"

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResponse:
        base_url = (config.endpoint or "https://api.anthropic.com/v1").rstrip("/")
        model = request.model or config.options.get("default_model") or self.default_model
        system, messages = _split_system(request.messages)
        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens or 1024,
            "messages": [
                {"role": "user" if m.get("role") == "user" else "assistant", "content": m.get("content", "")}
                for m in messages
            ],
        }
        if system:
            body["system"] = system
        if request.temperature is not None:
            body["temperature"] = request.temperature
        headers = {
            "Content-Type": "application/json",
            "x-api-key": config.api_key or "",
            "anthropic-version": self.api_version,
        }

        data = await self.request_json(config, "POST", f"{base_url}/messages", headers=headers, json_body=body)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise _malformed(config, "no content blocks")
        content = "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
        usage = data.get("usage") or {}
        tokens = None
        if usage:
            tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
        return ProviderResponse(
            content=content,
            model=str(data.get("model") or model),
            tokens_used=tokens,
            metadata={"id": data.get("id"), "stop_reason": data.get("stop_reason")},
        )


class GeminiClient(HttpProviderClient):
    default_model = "gemini-1.5-flash"

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResponse:
        base_url = (config.endpoint or "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
        model = request.model or config.options.get("default_model") or self.default_model
        system, messages = _split_system(request.messages)
        body: Dict[str, Any] = {
            "contents": [
                {
                    "role": "user" if m.get("role") == "user" else "model",
                    "parts": [{"text": m.get("content", "")}],
                }
                for m in messages
            ],
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        generation: Dict[str, Any] = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.max_tokens:
            generation["maxOutputTokens"] = request.max_tokens
        if generation:
            body["generationConfig"] = generation

        data = await self.request_json(
            config,
            "POST",
            f"{base_url}/models/{model}:generateContent",
            headers={"Content-Type": "application/json", "x-goog-api-key": config.api_key or ""},
            json_body=body,
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            raise _malformed(config, "no candidates")
        usage = data.get("usageMetadata") or {}
        return ProviderResponse(
            content="".join(p.get("text", "") for p in parts if isinstance(p, dict)),
            model=model,
            tokens_used=usage.get("totalTokenCount"),
            metadata={
                "prompt_tokens": usage.get("promptTokenCount"),
                "candidates_tokens": usage.get("candidatesTokenCount"),
            },
        )
