# ABOUTME: Tests for the node tool loop: dispatching tool calls, feeding results back and ending on submission.
# ABOUTME: Uses in-process function tools and a scripted model client.

import asyncio
import json
import sys
import time
import unittest
from pathlib import Path

# Fix path to include project root
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.append(project_root)

from agent_engine import AgentNode, FunctionToolProvider, NodeInvocation, NodeStage, toOpenAiSchema
from graph_engine import RunContext
from stream_aggregator import EventKind
from workflow_errors import Cancelled, InvocationError, ToolLoopExceededError
from workflow_state import Message, WorkflowState
from tests.scripted_llm import ScriptedLlmClient, textTurn, toolNames, toolTurn

PRICE_TOOLS = {
    "get_price": {
        "name": "get_price",
        "description": "Latest close for a ticker",
        "inputSchema": {
            "type": "object",
            "properties": {"symbol": {"type": "string"}},
            "required": ["symbol"],
        },
    }
}

SUBMIT_NOTE = {
    "submit_note": {
        "name": "submit_note",
        "description": "Submit the final note",
        "inputSchema": {
            "type": "object",
            "properties": {"note": {"type": "string"}},
            "required": ["note"],
        },
    }
}


def _priceProvider(calls=None):
    def getPrice(symbol):
        if calls is not None:
            calls.append(symbol)
        return {"symbol": symbol, "close": 190.5}

    return FunctionToolProvider("prices", PRICE_TOOLS, {"get_price": getPrice})


class PriceNode(AgentNode):
    def prepare(self, state):
        return [Message.system("You price stocks."), Message.user(state.prompt)]

    def route(self, state, finalMessage):
        state.appendMessage(finalMessage)


class NoteTakingNode(PriceNode):
    submitTool = SUBMIT_NOTE


def _request():
    return [Message.user("Price AAPL")]


def test_schema_conversion_uses_input_schema_as_parameters():
    schema = toOpenAiSchema(PRICE_TOOLS)
    assert schema[0]["type"] == "function"
    assert schema[0]["function"]["name"] == "get_price"
    assert schema[0]["function"]["parameters"]["required"] == ["symbol"]


def test_function_provider_requires_every_implementation():
    try:
        FunctionToolProvider("prices", PRICE_TOOLS, {})
    except ValueError as exc:
        assert "get_price" in str(exc)
    else:
        raise AssertionError("expected ValueError")


class TestToolLoop(unittest.IsolatedAsyncioTestCase):

    async def test_tool_result_is_fed_back_to_the_model(self):
        calls = []
        client = ScriptedLlmClient(scripts=[
            toolTurn("c1", "get_price", {"symbol": "AAPL"}),
            textTurn("AAPL closed at 190.5"),
        ])
        node = PriceNode("pricer", client, model="m", toolProviders=[_priceProvider(calls)])
        events = []
        invocation = NodeInvocation("pricer")

        reply = await node.execute(RunContext(emit=events.append), _request(), invocation)

        self.assertEqual(reply.content, "AAPL closed at 190.5")
        self.assertEqual(calls, ["AAPL"])
        self.assertEqual(invocation.toolCycles, 1)
        self.assertEqual(toolNames(client.calls[0]["tools"]), ["get_price"])

        secondRequest = client.calls[1]["messages"]
        self.assertEqual(secondRequest[-2]["tool_calls"][0]["id"], "c1")
        self.assertEqual(secondRequest[-1]["role"], "tool")
        self.assertEqual(secondRequest[-1]["tool_call_id"], "c1")
        self.assertEqual(json.loads(secondRequest[-1]["content"]), {"symbol": "AAPL", "close": 190.5})

        kinds = [e.kind for e in events]
        self.assertEqual(kinds.count(EventKind.TOOL_RESULT_FINAL), 1)
        self.assertEqual(kinds.count(EventKind.TEXT_FINAL), 2)

    async def test_malformed_arguments_are_reported_to_the_model(self):
        calls = []
        client = ScriptedLlmClient(scripts=[
            toolTurn("c1", "get_price", "{'symbol': 'AAPL'}"),
            textTurn("retrying is not needed"),
        ])
        node = PriceNode("pricer", client, model="m", toolProviders=[_priceProvider(calls)])

        await node.execute(RunContext(), _request())

        feedback = client.calls[1]["messages"][-1]["content"]
        self.assertTrue(feedback.startswith("ERROR: Your tool call arguments were not valid JSON"))
        self.assertEqual(calls, [])

    async def test_unknown_tool_returns_error_text(self):
        client = ScriptedLlmClient(scripts=[
            toolTurn("c1", "get_weather", {"city": "Paris"}),
            textTurn("ok"),
        ])
        node = PriceNode("pricer", client, model="m", toolProviders=[_priceProvider()])

        await node.execute(RunContext(), _request())

        self.assertIn("get_weather not found", client.calls[1]["messages"][-1]["content"])

    async def test_tool_errors_are_returned_as_text(self):
        def explode(symbol):
            raise RuntimeError("quote service down")

        provider = FunctionToolProvider("prices", PRICE_TOOLS, {"get_price": explode})
        client = ScriptedLlmClient(scripts=[toolTurn("c1", "get_price", {"symbol": "AAPL"}), textTurn("ok")])
        node = PriceNode("pricer", client, model="m", toolProviders=[provider])

        await node.execute(RunContext(), _request())

        self.assertEqual(client.calls[1]["messages"][-1]["content"], "Error: quote service down")

    async def test_async_tool_functions_are_awaited(self):
        async def getPrice(symbol):
            return f"{symbol}: 42"

        provider = FunctionToolProvider("prices", PRICE_TOOLS, {"get_price": getPrice})
        client = ScriptedLlmClient(scripts=[toolTurn("c1", "get_price", {"symbol": "MSFT"}), textTurn("ok")])
        node = PriceNode("pricer", client, model="m", toolProviders=[provider])

        await node.execute(RunContext(), _request())

        self.assertEqual(client.calls[1]["messages"][-1]["content"], "MSFT: 42")

    async def test_submission_tool_ends_the_loop(self):
        client = ScriptedLlmClient(scripts=[
            toolTurn("c1", "get_price", {"symbol": "AAPL"}),
            toolTurn("c2", "submit_note", {"note": "AAPL is fairly priced"}),
            textTurn("never requested"),
        ])
        node = NoteTakingNode("noter", client, model="m", toolProviders=[_priceProvider()])

        reply = await node.execute(RunContext(), _request())

        self.assertEqual(len(client.calls), 2)
        self.assertEqual(toolNames(client.calls[0]["tools"]), ["get_price", "submit_note"])
        self.assertEqual(node.submission(reply), {"note": "AAPL is fairly priced"})
        self.assertEqual(node.submittedText(reply, "note"), "AAPL is fairly priced")

    async def test_submitted_text_falls_back_to_content(self):
        client = ScriptedLlmClient(scripts=[textTurn("  plain answer  ")])
        node = NoteTakingNode("noter", client, model="m")

        reply = await node.execute(RunContext(), _request())

        self.assertEqual(node.submission(reply), {})
        self.assertEqual(node.submittedText(reply, "note"), "plain answer")

    async def test_tool_loop_ceiling_is_enforced(self):
        client = ScriptedLlmClient(
            responder=lambda messages, tools: toolTurn(f"c{len(messages)}", "get_price", {"symbol": "AAPL"})
        )
        node = PriceNode("pricer", client, model="m", toolProviders=[_priceProvider()], maxToolCycles=3)

        with self.assertRaises(ToolLoopExceededError) as raised:
            await node.execute(RunContext(), _request())

        self.assertEqual(raised.exception.maxCycles, 3)
        self.assertEqual(len(client.calls), 3)

    async def test_run_walks_the_node_stages(self):
        client = ScriptedLlmClient(scripts=[textTurn("done")])
        node = PriceNode("pricer", client, model="m")
        state = WorkflowState("AAPL", "2024-05-10", "Price AAPL")

        reply = await node.run(RunContext(), state)

        self.assertEqual(reply.content, "done")
        self.assertEqual(state.conversationHistory[-1].content, "done")
        self.assertEqual(client.calls[0]["messages"][0], {"role": "system", "content": "You price stocks."})
        self.assertIsNone(client.calls[0]["tools"])

    async def test_slow_tool_is_interrupted_by_the_deadline(self):
        interrupted = []

        async def getPrice(symbol):
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                interrupted.append(symbol)
                raise
            return "too late"

        provider = FunctionToolProvider("prices", PRICE_TOOLS, {"get_price": getPrice})
        client = ScriptedLlmClient(scripts=[toolTurn("c1", "get_price", {"symbol": "AAPL"}), textTurn("never")])
        node = PriceNode("pricer", client, model="m", toolProviders=[provider])
        ctx = RunContext(timeout=0.2)

        started = time.monotonic()
        with self.assertRaises(Cancelled) as raised:
            await node.execute(ctx, _request())

        self.assertLess(time.monotonic() - started, 2)
        self.assertEqual(raised.exception.reason, "deadline exceeded")
        self.assertEqual(raised.exception.nodeName, "pricer")
        self.assertEqual(interrupted, ["AAPL"])
        self.assertEqual(len(client.calls), 1)

    async def test_cancel_during_slow_tool_stops_the_node(self):
        async def getPrice(symbol):
            await asyncio.sleep(30)

        provider = FunctionToolProvider("prices", PRICE_TOOLS, {"get_price": getPrice})
        client = ScriptedLlmClient(scripts=[toolTurn("c1", "get_price", {"symbol": "AAPL"}), textTurn("never")])
        node = PriceNode("pricer", client, model="m", toolProviders=[provider])
        ctx = RunContext()
        asyncio.get_running_loop().call_later(0.1, ctx.cancel, "user requested")

        with self.assertRaises(Cancelled) as raised:
            await asyncio.wait_for(node.execute(ctx, _request()), timeout=5)

        self.assertEqual(raised.exception.reason, "user requested")
        self.assertEqual(len(client.calls), 1)

    async def test_broken_provider_becomes_invocation_error(self):
        class BrokenProvider:
            async def getOpenAiToolSchema(self):
                return toOpenAiSchema(PRICE_TOOLS)

            async def executeMcpTool(self, name, arguments):
                raise ConnectionResetError("tool server went away")

        client = ScriptedLlmClient(scripts=[toolTurn("c1", "get_price", {"symbol": "AAPL"}), textTurn("never")])
        node = PriceNode("pricer", client, model="m", toolProviders=[BrokenProvider()])

        with self.assertRaises(InvocationError) as raised:
            await node.execute(RunContext(), _request())

        self.assertEqual(raised.exception.nodeName, "pricer")
        self.assertIsInstance(raised.exception.__cause__, ConnectionResetError)

    async def test_route_failure_is_wrapped_with_the_node_name(self):
        class StrictNode(PriceNode):
            def route(self, state, finalMessage):
                raise KeyError("missing submission field")

        client = ScriptedLlmClient(scripts=[textTurn("done")])
        node = StrictNode("strict", client, model="m")
        state = WorkflowState("AAPL", "2024-05-10", "Price AAPL")

        with self.assertRaises(InvocationError) as raised:
            await node.run(RunContext(), state)

        self.assertEqual(raised.exception.nodeName, "strict")
        self.assertIsInstance(raised.exception.__cause__, KeyError)

    async def test_invocation_stages_are_recorded(self):
        invocation = NodeInvocation("pricer")
        invocation.advance(NodeStage.PREPARING)
        invocation.advance(NodeStage.EXECUTING)
        self.assertEqual(invocation.stage, NodeStage.EXECUTING)


if __name__ == "__main__":
    unittest.main()
