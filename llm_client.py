# ABOUTME: strict abstraction layer for streaming LLM interactions.
# ABOUTME: Handles network transport, retries, and chunk decoding, decoupling nodes from HTTP logic.

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import anyio
import httpx
from openai import AsyncOpenAI

from stream_aggregator import Delta, ToolCallFragment

# Configure logging
logger = logging.getLogger(__name__)


class ILlmClient(ABC):
    """Interface for LLM interactions to enable swapping real/scripted implementations."""

    lastUsage: Dict[str, int] = {}

    @abstractmethod
    def streamCompletion(
        self, model: str, messages: List[Dict], tools: Optional[List[Dict]] = None
    ) -> AsyncIterator[Delta]:
        """Returns a lazy, finite, non-restartable stream of deltas for one model turn."""


def _deltaFromChunk(chunk: Dict[str, Any]) -> Optional[Delta]:
    """Decode one OpenAI-compatible chat.completion.chunk dict. Usage-only chunks yield None."""
    choices = chunk.get("choices") or []
    if not choices:
        return None
    choice = choices[0]
    delta = choice.get("delta") or {}
    fragments = []
    for tc in delta.get("tool_calls") or []:
        function = tc.get("function") or {}
        fragments.append(ToolCallFragment(
            id=tc.get("id"),
            name=function.get("name"),
            arguments=function.get("arguments") or "",
            index=tc.get("index"),
        ))
    return Delta(
        role=delta.get("role") or "assistant",
        content=delta.get("content") or "",
        toolCallFragments=fragments,
        finishReason=choice.get("finish_reason"),
    )


async def _iterSseDeltas(response: httpx.Response, owner: ILlmClient) -> AsyncIterator[Delta]:
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Skipping undecodable stream chunk: {data[:120]}")
            continue
        if chunk.get("usage"):
            owner.lastUsage = _normalizeUsage(chunk["usage"])
        delta = _deltaFromChunk(chunk)
        if delta is not None:
            yield delta


class LocalLlmClient(ILlmClient):
    """Client for local LLM interactions using OpenAI-compatible API format (Ollama/Docker Model Runner)."""

    def __init__(self, baseUrl: str, model: str, temperature: float = 0.1, maxTokens: int = 2048):
        """
        Initialize LLM client with baseUrl and model name.
        baseUrl should be the root (e.g., http://localhost:11434)
        """
        self.baseUrl = baseUrl.rstrip('/')
        self.model = model
        self.temperature = temperature
        self.maxTokens = maxTokens

        logger.info(f"LocalLlmClient initialized: {self.baseUrl} using {self.model}")

    async def streamCompletion(self, model: str, messages: List[Dict], tools: Optional[List[Dict]] = None) -> AsyncIterator[Delta]:
        endpoint = f"{self.baseUrl}/v1/chat/completions"

        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.maxTokens,
            "stream": True
        }

        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        maxRetries = 3
        retryDelay = 10  # seconds

        async with httpx.AsyncClient(timeout=600.0) as client:
            for attempt in range(maxRetries):
                started = False
                try:
                    async with client.stream("POST", endpoint, json=payload) as response:
                        if response.status_code == 503:
                            logger.warning(
                                f"Local LLM still loading (503). "
                                f"Retrying in {retryDelay}s... (Attempt {attempt + 1}/{maxRetries})"
                            )
                            await anyio.sleep(retryDelay)
                            continue

                        response.raise_for_status()
                        async for delta in _iterSseDeltas(response, self):
                            started = True
                            yield delta
                        return
                except Exception as exc:
                    logger.error(f"Local LLM error (Attempt {attempt + 1}): {exc}")
                    # Deltas already handed out cannot be replayed
                    if started or attempt == maxRetries - 1:
                        raise
                    await anyio.sleep(2)

        raise RuntimeError("Local LLM failed after maximum retries")


class OpenRouterClient(ILlmClient):
    """Production client for OpenRouter API over raw httpx server-sent events."""

    def __init__(self, apiKey: str, baseUrl: str, maxRetries: int = 3, backoffCap: int = 60):
        self.apiKey = apiKey
        self.baseUrl = baseUrl
        self.maxRetries = maxRetries
        self.backoffCap = backoffCap

    async def streamCompletion(self, model: str, messages: List[Dict], tools: Optional[List[Dict]] = None) -> AsyncIterator[Delta]:
        payload = {
            "model": model,
            "messages": messages,
            "stream": True
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        async with httpx.AsyncClient(timeout=None) as client:
            for attempt in range(self.maxRetries):
                started = False
                try:
                    async with client.stream(
                        "POST",
                        self.baseUrl,
                        headers={
                            "Authorization": f"Bearer {self.apiKey}",
                            "Content-Type": "application/json"
                        },
                        json=payload
                    ) as response:
                        response.raise_for_status()
                        async for delta in _iterSseDeltas(response, self):
                            started = True
                            yield delta
                        return
                except Exception as exc:
                    logger.error(f"OpenRouterClient error (Attempt {attempt + 1}): {exc}")
                    if started or attempt == self.maxRetries - 1:
                        raise
                    await anyio.sleep(min(2 ** attempt, self.backoffCap))

        raise RuntimeError("OpenRouterClient failed after maximum retries")


class OpenAIClient(ILlmClient):
    """
    ABOUTME: Primary production client using the OpenAI SDK (OpenAI or OpenRouter endpoints).
    ABOUTME: Streams chat completion chunks and maps them onto Delta records.
    """

    OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

    def __init__(self, apiKey: str, baseUrl: str = OPENROUTER_BASE_URL, maxRetries: int = 3, backoffCap: int = 60):
        self.maxRetries = maxRetries
        self.backoffCap = backoffCap
        self._client = AsyncOpenAI(
            api_key=apiKey,
            base_url=baseUrl,
            default_headers={
                "HTTP-Referer": "https://github.com/multi-agent-trading-workflow",
                "X-Title": "Multi-Agent Trading Workflow"
            },
            max_retries=0  # We handle retries ourselves for full observability
        )
        logger.info(f"OpenAIClient (SDK) initialized pointing to {baseUrl}")

    async def streamCompletion(self, model: str, messages: List[Dict], tools: Optional[List[Dict]] = None) -> AsyncIterator[Delta]:
        kwargs = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True}
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        stream = None
        for attempt in range(self.maxRetries):
            try:
                logger.debug(f"OpenAIClient SDK request: model={model}, messages={len(messages)} (Attempt {attempt + 1})")
                stream = await self._client.chat.completions.create(**kwargs)
                break
            except Exception as exc:
                logger.error(f"OpenAI SDK error (Attempt {attempt + 1}): {exc}")
                if attempt == self.maxRetries - 1:
                    raise
                await anyio.sleep(min(2 ** attempt, self.backoffCap))

        if stream is None:
            raise RuntimeError("OpenAIClient failed after maximum retries")

        async for chunk in stream:
            if getattr(chunk, "usage", None):
                self.lastUsage = _normalizeUsage(chunk.usage)
            delta = self._mapChunk(chunk)
            if delta is not None:
                yield delta

    def _mapChunk(self, chunk) -> Optional[Delta]:
        """Internal mapper from OpenAI SDK chunk objects to Delta."""
        if not chunk.choices:
            return None
        choice = chunk.choices[0]
        delta = choice.delta
        fragments = [
            ToolCallFragment(
                id=tc.id,
                name=tc.function.name if tc.function else None,
                arguments=(tc.function.arguments or "") if tc.function else "",
                index=tc.index,
            ) for tc in (delta.tool_calls or [])
        ]
        return Delta(
            role=delta.role or "assistant",
            content=delta.content or "",
            toolCallFragments=fragments,
            finishReason=choice.finish_reason,
        )


def _normalizeUsage(usage: Any) -> Dict[str, int]:
    """Normalize any usage object/dict into a consistent {prompt_tokens, completion_tokens, total_tokens} dict."""
    if isinstance(usage, dict):
        raw = usage
    elif hasattr(usage, "__dict__"):
        raw = usage.__dict__
    else:
        raw = {}
    prompt = int(raw.get("prompt_tokens", 0) or 0)
    completion = int(raw.get("completion_tokens", 0) or 0)
    total = int(raw.get("total_tokens", 0) or prompt + completion)
    return {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": total
    }


def getLlmClient(
    provider: str,
    model: str,
    apiKey: Optional[str] = None,
    baseUrl: Optional[str] = None,
    backoffCap: int = 60
) -> ILlmClient:
    """
    Factory to instantiate the correct LLM client based on provider.
    Handles URL normalization so callers never need to know which URL format each client expects:
      - openai:     SDK auto-appends /chat/completions, so we strip it if caller passed the full endpoint.
      - openrouter: Raw httpx, so we ensure the full endpoint URL is present.
      - local:      Uses base URL only (we append /v1/chat/completions ourselves).
    """
    provider = provider.lower()

    if provider == "local":
        return LocalLlmClient(
            baseUrl=baseUrl or "http://localhost:11434",
            model=model
        )

    elif provider == "openai":
        # SDK appends /chat/completions itself, strip it if the caller passed the full endpoint
        sdkBase = re.sub(r"/chat/completions$", "", baseUrl or OpenAIClient.OPENROUTER_BASE_URL).rstrip("/")
        return OpenAIClient(
            apiKey=apiKey or "",
            baseUrl=sdkBase,
            backoffCap=backoffCap
        )

    else:  # openrouter, raw httpx needs the full endpoint
        openRouterDefault = "https://openrouter.ai/api/v1/chat/completions"
        rawEndpoint = baseUrl or openRouterDefault
        if not rawEndpoint.rstrip("/").endswith("/chat/completions"):
            rawEndpoint = rawEndpoint.rstrip("/") + "/chat/completions"
        return OpenRouterClient(
            apiKey=apiKey or "",
            baseUrl=rawEndpoint,
            backoffCap=backoffCap
        )
