"""Ollama model client - generative-text service.

Single request/response calls against the Ollama REST API. `complete`
reports failure in its return value; `generate` and `generate_json` raise
GenerationError. Generation is never retried automatically.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx

from . import config
from .errors import GenerationError

HEALTH_TIMEOUT = 5


@dataclass
class GenerationResponse:
    success: bool
    data: str | None = None
    error: str | None = None


class OllamaClient:
    """Async client for the Ollama REST API."""

    def __init__(
        self,
        model: str = config.MODEL_NAME,
        base_url: str = config.OLLAMA_BASE_URL,
        timeout: float = config.GENERATE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> OllamaClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_models(self) -> list[str]:
        """Names of downloaded models; empty when the server is unreachable."""
        try:
            resp = await self._client.get("/api/tags", timeout=HEALTH_TIMEOUT)
        except httpx.HTTPError:
            return []
        if resp.status_code != 200:
            return []
        return [m.get("name", "") for m in resp.json().get("models", [])]

    async def is_running(self) -> bool:
        """Check if Ollama server is reachable."""
        try:
            resp = await self._client.get("/api/tags", timeout=HEALTH_TIMEOUT)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    async def is_model_available(self) -> bool:
        """Check if the configured model is downloaded."""
        models = await self.list_models()
        # Exact match or with :latest suffix
        return any(
            self.model == m
            or self.model == m.split(":")[0]
            or f"{self.model}:latest" == m
            for m in models
        )

    async def complete(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.3,
        max_tokens: int = 2048,
        json_mode: bool = False,
    ) -> GenerationResponse:
        """One generation call. Never raises; failures come back in the response."""
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }
        if system:
            payload["system"] = system
        if json_mode:
            payload["format"] = "json"

        try:
            resp = await self._client.post("/api/generate", json=payload)
        except httpx.TimeoutException:
            return GenerationResponse(False, error=f"Model generation timed out after {self.timeout:.0f}s")
        except httpx.ConnectError:
            return GenerationResponse(False, error="Cannot connect to Ollama. Is it running? Try: ollama serve")
        except httpx.HTTPError as e:
            return GenerationResponse(False, error=f"Ollama request failed: {e}")

        if resp.status_code != 200:
            return GenerationResponse(False, error=f"Ollama returned {resp.status_code}: {resp.text[:200]}")

        try:
            text = resp.json().get("response", "")
        except ValueError:
            return GenerationResponse(False, error="Ollama returned a non-JSON body")
        if not text.strip():
            return GenerationResponse(False, error="Model returned an empty response")
        return GenerationResponse(True, data=text)

    async def generate(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ) -> str:
        """Generate text from prompt. Returns raw text response."""
        result = await self.complete(prompt, system, temperature, max_tokens)
        if not result.success:
            raise GenerationError(result.error or "Generation failed")
        return result.data.strip()

    async def generate_json(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.2,
    ) -> dict:
        """Generate and parse JSON response."""
        result = await self.complete(prompt, system, temperature, max_tokens=2048, json_mode=True)
        if not result.success:
            raise GenerationError(result.error or "Generation failed")
        try:
            data = json.loads(result.data)
        except json.JSONDecodeError as e:
            raise GenerationError(f"Model returned invalid JSON: {result.data[:200]}") from e
        if not isinstance(data, dict):
            raise GenerationError("Model returned JSON that is not an object")
        return data
