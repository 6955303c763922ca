# ABOUTME: Core engine for workflow nodes: prepare, execute (streamed tool loop) and route.
# ABOUTME: Provides tool providers for MCP bridges and in-process Python functions.

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack, suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

import internal_configs as cfg
from graph_engine import RunContext
from llm_client import ILlmClient
from stream_aggregator import Delta, StreamAggregator
from workflow_errors import Cancelled, InvocationError, ToolLoopExceededError, WorkflowError
from workflow_state import Message, ToolCall, WorkflowState

# Configure logging
logger = logging.getLogger(__name__)


def toOpenAiSchema(toolsLibrary: Dict[str, Dict]) -> List[Dict]:
    """Convert internal tool definitions to OpenAI tool call schema."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["inputSchema"]
            }
        }
        for tool in toolsLibrary.values()
    ]


class McpToolProvider:
    """Bridges the model with Docker-hosted MCP servers that expose market data tools."""

    def __init__(self, name: str, serverParams: StdioServerParameters):
        self.name = name
        self.serverParams = serverParams
        self.session: Optional[ClientSession] = None
        self.exitStack = AsyncExitStack()
        self.toolsLibrary = {}  # Cache tool definitions

    async def connect(self):
        """Establishes deterministic stdio connection to the Dockerized MCP host."""
        if self.session:
            return

        logger.info(f"Connecting to McpToolProvider [{self.name}]: {self.serverParams.command} {' '.join(self.serverParams.args)}...")

        try:
            read, write = await self.exitStack.enter_async_context(stdio_client(self.serverParams))
            self.session = await self.exitStack.enter_async_context(ClientSession(read, write))
            await self.session.initialize()

            result = await self.session.list_tools()
            self.toolsLibrary = {tool.name: tool for tool in result.tools}
            logger.info(f"Connected to [{self.name}]. Loaded {len(self.toolsLibrary)} tools.")
        except Exception as exc:
            logger.error(f"Failed to connect to McpToolProvider [{self.name}]: {exc}")
            raise

    async def getOpenAiToolSchema(self) -> List[Dict]:
        if not self.session:
            await self.connect()

        # MCP inputSchema maps 1:1 to OpenAI parameters
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.inputSchema
                }
            }
            for tool in self.toolsLibrary.values()
        ]

    async def executeMcpTool(self, name: str, arguments: Dict) -> str:
        """Execute the requested tool on the container. Failures come back as 'Error: ...' text for the model."""
        if not self.session:
            raise RuntimeError(f"McpToolProvider Session [{self.name}] not connected")

        logger.info(f"Executing MCP Tool [{self.name}]: {name}({json.dumps(arguments)})")
        try:
            result = await self.session.call_tool(name, arguments)
            parts = [getattr(part, "text", "") for part in (getattr(result, "content", None) or [])]
            text = "\n".join(p for p in parts if p)
            if getattr(result, "isError", False):
                return f"Error: {text or 'tool reported failure'}"
            return text or str(result)
        except Exception as exc:
            logger.error(f"Error calling tool {name} on {self.name}: {exc}")
            return f"Error: {str(exc)}"

    async def cleanup(self):
        logger.info(f"Cleaning up McpToolProvider [{self.name}]")
        try:
            await self.exitStack.aclose()
            self.session = None
        except asyncio.CancelledError:
            # Cleanup was cancelled during shutdown, suppress it
            logger.debug(f"Cleanup cancelled for [{self.name}] (shutdown in progress)")
        except Exception as exc:
            logger.debug(f"Cleanup exception for [{self.name}]: {exc}")


class FunctionToolProvider:
    """
    Exposes plain Python callables (sync or async) as tools.
    Complies with the same execution interface as McpToolProvider.
    """

    def __init__(self, name: str, definitions: Dict[str, Dict], functions: Dict[str, Callable[..., Any]]):
        missing = set(definitions) - set(functions)
        if missing:
            raise ValueError(f"No implementation for tools: {', '.join(sorted(missing))}")
        self.name = name
        self.toolsLibrary = definitions
        self.functions = functions

    async def getOpenAiToolSchema(self) -> List[Dict]:
        return toOpenAiSchema(self.toolsLibrary)

    async def executeMcpTool(self, name: str, arguments: Dict) -> str:
        function = self.functions.get(name)
        if function is None:
            return f"Error: Tool {name} not supported by this provider."
        logger.info(f"Executing function tool [{self.name}]: {name}({json.dumps(arguments)})")
        try:
            result = function(**arguments)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.error(f"Error calling tool {name} on {self.name}: {exc}")
            return f"Error: {str(exc)}"
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)


class NodeStage(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    EXECUTING = "executing"
    TOOL_DISPATCH = "tool_dispatch"
    ROUTING = "routing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class NodeInvocation:
    """Bookkeeping for a single node visit."""
    nodeName: str
    stage: NodeStage = NodeStage.IDLE
    toolCycles: int = 0
    turns: List[Message] = field(default_factory=list)

    def advance(self, stage: NodeStage):
        logger.debug(f"{self.nodeName}: {self.stage.value} -> {stage.value}")
        self.stage = stage


class AgentNode(ABC):
    """
    One named unit of work in the trading graph.
    Subclasses supply prepare() and route(); execute() runs the streamed model call and its tool loop.
    Nodes hold no per-run state, so a compiled plan can be shared across runs.
    """

    # Terminal tool definition ({name: definition}); calling it ends the tool loop
    submitTool: Optional[Dict[str, Dict]] = None

    def __init__(
        self,
        name: str,
        llmClient: ILlmClient,
        model: str = cfg.config.PRIMARY_MODEL,
        toolProviders: Sequence[Any] = (),
        maxToolCycles: int = cfg.config.MAX_TOOL_CYCLES,
        fragmentPolicy: str = cfg.config.TOOL_FRAGMENT_POLICY,
    ):
        self.name = str(name)
        self.llmClient = llmClient
        self.model = model
        self.toolProviders = list(toolProviders)
        self.maxToolCycles = maxToolCycles
        self.fragmentPolicy = fragmentPolicy

    @property
    def submitToolName(self) -> Optional[str]:
        if not self.submitTool:
            return None
        return next(iter(self.submitTool))

    @abstractmethod
    def prepare(self, state: WorkflowState) -> List[Message]:
        """Build the outbound request from state. Must not mutate state."""

    @abstractmethod
    def route(self, state: WorkflowState, finalMessage: Message):
        """Write results into state and always set the next node."""

    async def run(self, ctx: RunContext, state: WorkflowState) -> Message:
        invocation = NodeInvocation(self.name)
        try:
            invocation.advance(NodeStage.PREPARING)
            request = self.prepare(state)

            invocation.advance(NodeStage.EXECUTING)
            finalMessage = await self.execute(ctx, request, invocation)

            invocation.advance(NodeStage.ROUTING)
            self.route(state, finalMessage)
        except WorkflowError:
            invocation.advance(NodeStage.FAILED)
            raise
        except Exception as exc:
            invocation.advance(NodeStage.FAILED)
            logger.error(f"{self.name}: failed while {invocation.stage.value}: {exc}")
            raise InvocationError(self.name, f"{type(exc).__name__}: {exc}") from exc
        invocation.advance(NodeStage.DONE)
        logger.info(f"{self.name}: done ({len(finalMessage.content)} chars, {invocation.toolCycles} tool cycles)")
        return finalMessage

    async def _collectToolSchemas(self) -> List[Dict]:
        availableTools = []
        for provider in self.toolProviders:
            availableTools.extend(await provider.getOpenAiToolSchema())
        if self.submitTool:
            availableTools.extend(toOpenAiSchema(self.submitTool))
        return availableTools

    async def execute(self, ctx: RunContext, request: List[Message], invocation: Optional[NodeInvocation] = None) -> Message:
        """
        Stream model turns until one carries no tool calls or calls the submission tool.
        Tool results are fed back through the aggregator so they surface as their own final events.
        """
        invocation = invocation or NodeInvocation(self.name)
        aggregator = StreamAggregator(self.name, ctx.emit, self.fragmentPolicy)
        messageHistory = [msg.message for msg in request]
        try:
            availableTools = await self._collectToolSchemas()
        except Exception as exc:
            raise InvocationError(self.name, f"tool schemas unavailable: {exc}") from exc

        for _ in range(self.maxToolCycles):
            ctx.raiseIfCancelled(self.name)
            deltas = self.llmClient.streamCompletion(
                self.model,
                messageHistory,
                tools=availableTools if availableTools else None
            )
            reply = await aggregator.consume(deltas, ctx)
            invocation.turns.append(reply)

            # CASE A: final text response
            if not reply.toolCalls:
                if not reply.content.strip():
                    logger.warning(f"{self.name}: LLM returned empty content")
                return reply

            # CASE B: submission tool ends the loop
            if self.submitToolName and reply.findToolCall(self.submitToolName):
                logger.info(f"{self.name}: submitted via {self.submitToolName}")
                return reply

            # CASE C: tool calls requested by LLM
            invocation.advance(NodeStage.TOOL_DISPATCH)
            invocation.toolCycles += 1
            messageHistory.append(reply.message)
            for requestedTool in reply.toolCalls:
                executionResult = await self._dispatchInterruptibly(ctx, requestedTool)
                toolMessage = aggregator.feed(
                    Delta.toolResult(requestedTool.id, requestedTool.name, executionResult)
                )[-1]
                invocation.turns.append(toolMessage)
                messageHistory.append(toolMessage.message)
            invocation.advance(NodeStage.EXECUTING)

        raise ToolLoopExceededError(self.name, self.maxToolCycles)

    async def _dispatchInterruptibly(self, ctx: RunContext, requestedTool: ToolCall) -> str:
        """Run one tool call as its own task, racing the run's cancellation and deadline."""
        ctx.raiseIfCancelled(self.name)
        dispatchTask = asyncio.create_task(self._dispatchTool(requestedTool))
        cancelTask = asyncio.create_task(ctx.waitCancelled())
        try:
            done, _ = await asyncio.wait(
                {dispatchTask, cancelTask},
                timeout=ctx.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelTask.cancel()
            if not dispatchTask.done():
                dispatchTask.cancel()
                with suppress(asyncio.CancelledError):
                    await dispatchTask

        if dispatchTask not in done:
            if not ctx.isCancelled():
                ctx.cancel("deadline exceeded")
            logger.warning(f"{self.name}: tool {requestedTool.name} interrupted ({ctx.reason})")
            raise Cancelled(self.name, ctx.reason or "cancelled")

        toolError = dispatchTask.exception()
        if toolError is not None:
            raise InvocationError(self.name, f"tool {requestedTool.name} failed: {toolError}") from toolError
        return dispatchTask.result()

    async def _dispatchTool(self, requestedTool: ToolCall) -> str:
        targetToolName = requestedTool.name
        rawArguments = requestedTool.arguments or "{}"

        # Parse tool arguments, feed errors back for self-correction
        try:
            toolArguments = json.loads(rawArguments)
            if not isinstance(toolArguments, dict):
                raise TypeError(f"expected a JSON object, got {type(toolArguments).__name__}")
        except (json.JSONDecodeError, TypeError) as parseError:
            logger.warning(
                f"{self.name}: Malformed tool JSON for {targetToolName}: {parseError}. "
                f"Raw: {rawArguments[:200]}. Feeding error back for self-correction."
            )
            return (
                f"ERROR: Your tool call arguments were not valid JSON. "
                f"Parse error: {parseError}. "
                f"Your raw output was: {rawArguments[:300]}. "
                f"Please re-call this tool with properly formatted JSON arguments "
                f"(use double quotes for all keys and string values)."
            )

        logger.info(f"{self.name}: LLM suggested tool -> {targetToolName}")
        for provider in self.toolProviders:
            if targetToolName in provider.toolsLibrary:
                return await provider.executeMcpTool(targetToolName, toolArguments)
        return f"Error: Tool {targetToolName} not found in this agent's bridge context."

    def submission(self, finalMessage: Message) -> Dict[str, Any]:
        """Arguments of the submission tool call, or {} when the model answered in plain text."""
        if not self.submitToolName:
            return {}
        toolCall = finalMessage.findToolCall(self.submitToolName)
        if toolCall is None:
            return {}
        return toolCall.parsedArguments()

    def submittedText(self, finalMessage: Message, key: str) -> str:
        value = self.submission(finalMessage).get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return finalMessage.content.strip()
