# ABOUTME: Unit tests for chunk decoding and provider selection in the streaming LLM clients.
# ABOUTME: Exercises SSE parsing over an in-memory httpx response; no network access.

import sys
import unittest
from pathlib import Path
from types import SimpleNamespace

import httpx

# Fix path to include project root
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.append(project_root)

from llm_client import (
    LocalLlmClient,
    OpenAIClient,
    OpenRouterClient,
    _deltaFromChunk,
    _iterSseDeltas,
    _normalizeUsage,
    getLlmClient,
)


def test_text_chunk_decodes_to_delta():
    delta = _deltaFromChunk({"choices": [{"delta": {"content": "Hi"}, "finish_reason": None}]})
    assert delta.role == "assistant"
    assert delta.content == "Hi"
    assert delta.finishReason is None


def test_tool_call_chunk_keeps_index_and_partial_arguments():
    delta = _deltaFromChunk({"choices": [{"delta": {"tool_calls": [
        {"index": 0, "id": "tc1", "function": {"name": "get_market_data", "arguments": '{"sym'}},
        {"index": 1, "function": {"arguments": "1"}},
    ]}, "finish_reason": None}]})
    first, second = delta.toolCallFragments
    assert (first.id, first.name, first.arguments, first.index) == ("tc1", "get_market_data", '{"sym', 0)
    assert (second.id, second.name, second.index) == (None, None, 1)


def test_usage_only_chunk_is_skipped():
    assert _deltaFromChunk({"choices": [], "usage": {"total_tokens": 3}}) is None


def test_usage_is_normalized():
    assert _normalizeUsage({"prompt_tokens": 3, "completion_tokens": 4}) == {
        "prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7
    }
    assert _normalizeUsage(None)["total_tokens"] == 0


def test_sdk_chunk_mapping():
    client = OpenAIClient(apiKey="test-key")
    chunk = SimpleNamespace(choices=[SimpleNamespace(
        delta=SimpleNamespace(role=None, content=None, tool_calls=[SimpleNamespace(
            id="tc1", index=0, function=SimpleNamespace(name="get_news", arguments='{"q":'),
        )]),
        finish_reason=None,
    )])
    delta = client._mapChunk(chunk)
    assert delta.content == ""
    assert delta.toolCallFragments[0].name == "get_news"
    assert client._mapChunk(SimpleNamespace(choices=[])) is None


def test_factory_normalizes_endpoints():
    openai = getLlmClient("openai", "m", apiKey="k", baseUrl="https://example.test/v1/chat/completions")
    assert isinstance(openai, OpenAIClient)
    assert str(openai._client.base_url).rstrip("/") == "https://example.test/v1"

    router = getLlmClient("openrouter", "m", apiKey="k", baseUrl="https://example.test/v1")
    assert isinstance(router, OpenRouterClient)
    assert router.baseUrl == "https://example.test/v1/chat/completions"

    local = getLlmClient("LOCAL", "m", baseUrl="http://localhost:12434/")
    assert isinstance(local, LocalLlmClient)
    assert local.baseUrl == "http://localhost:12434"


class TestSseDecoding(unittest.IsolatedAsyncioTestCase):

    async def test_server_sent_events_become_deltas(self):
        body = (
            'data: {"choices":[{"delta":{"content":"Price "},"finish_reason":null}]}\n\n'
            ": keep-alive\n\n"
            "data: not-json\n\n"
            'data: {"choices":[{"delta":{"content":"up"},"finish_reason":"stop"}]}\n\n'
            'data: {"choices":[],"usage":{"prompt_tokens":5,"completion_tokens":2}}\n\n'
            "data: [DONE]\n\n"
        ).encode()
        response = httpx.Response(200, content=body)
        owner = LocalLlmClient("http://localhost:12434", "m")

        deltas = [delta async for delta in _iterSseDeltas(response, owner)]

        self.assertEqual([d.content for d in deltas], ["Price ", "up"])
        self.assertEqual(deltas[-1].finishReason, "stop")
        self.assertEqual(owner.lastUsage["total_tokens"], 7)


if __name__ == "__main__":
    unittest.main()
