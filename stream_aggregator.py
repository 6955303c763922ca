# ABOUTME: Reassembles streamed model deltas into one final message per turn and emits lifecycle events.
# ABOUTME: Drains the delta stream as its own task so cancellation and deadlines can interrupt it.

import asyncio
import logging
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from workflow_errors import Cancelled, InvocationError
from workflow_state import Message, ToolCall

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    RUN_START = "run_start"
    MESSAGE_CHUNK = "message_chunk"
    TEXT_FINAL = "text_final"
    TOOL_RESULT_FINAL = "tool_call_result_final"
    ERROR = "error"
    FINISHED = "finished"
    PERSISTENCE_WARNING = "persistence_warning"


@dataclass
class StreamEvent:
    kind: EventKind
    agent: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    message: Optional[Message] = None

    def toPayload(self) -> Dict[str, Any]:
        body = {"event": self.kind.value}
        if self.agent:
            body["agent"] = self.agent
        body.update(self.payload)
        return body


EventSink = Callable[[StreamEvent], None]


@dataclass
class ToolCallFragment:
    """Partial tool call. Later fragments of the same call may omit id and name."""
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""
    index: Optional[int] = None


@dataclass
class Delta:
    """One streamed piece of model output, or a complete tool result when role is 'tool'."""
    role: str = "assistant"
    content: str = ""
    toolCallFragments: List[ToolCallFragment] = field(default_factory=list)
    finishReason: Optional[str] = None
    toolCallId: Optional[str] = None
    toolName: Optional[str] = None

    @classmethod
    def toolResult(cls, toolCallId: str, toolName: str, content: str) -> "Delta":
        return cls(role="tool", content=content, toolCallId=toolCallId, toolName=toolName)

    @property
    def isToolResult(self) -> bool:
        return self.role == "tool"


class FragmentPolicy(str, Enum):
    """Attribution of a tool-call fragment that arrives without an id."""
    SINGLE_OPEN = "single_open"
    LATEST = "latest"
    DROP = "drop"


@dataclass
class _ToolBuffer:
    id: str
    name: str = ""
    arguments: List[str] = field(default_factory=list)

    def toToolCall(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments="".join(self.arguments))


def newMessageId() -> str:
    return uuid.uuid4().hex[:20]


class StreamAggregator:
    """
    Per-node accumulator.
    Text deltas and tool-call fragments build up an open turn; a finish reason or a forced
    flush closes it as exactly one text_final event. Empty turns produce nothing.
    """

    def __init__(self, agentName: str, emit: Optional[EventSink] = None, policy: str = FragmentPolicy.SINGLE_OPEN):
        self.agentName = agentName
        self.emit = emit
        self.policy = FragmentPolicy(policy)
        self.droppedFragments = 0
        self.reset()

    def reset(self):
        self._text: List[str] = []
        self._toolBuffers: Dict[str, _ToolBuffer] = {}
        self._indexToId: Dict[int, str] = {}
        self._latestId: Optional[str] = None

    @property
    def hasOpenTurn(self) -> bool:
        return bool(self._text) or bool(self._toolBuffers)

    def _emit(self, kind: EventKind, payload: Dict[str, Any], message: Optional[Message] = None):
        if self.emit is None:
            return
        self.emit(StreamEvent(kind=kind, agent=self.agentName, payload=payload, message=message))

    def feed(self, delta: Delta) -> List[Message]:
        """Apply one delta. Returns the messages finalized by it, in emission order."""
        finals: List[Message] = []

        if delta.isToolResult:
            flushed = self.flush(forced=True)
            if flushed is not None:
                finals.append(flushed)
            finals.append(self._finalizeToolResult(delta))
            return finals

        chunkCalls = []
        if delta.content:
            self._text.append(delta.content)
        for fragment in delta.toolCallFragments:
            buffer = self._attachFragment(fragment)
            if buffer is not None:
                chunkCalls.append({"id": buffer.id, "name": buffer.name, "arguments": fragment.arguments})

        if delta.content or chunkCalls:
            self._emit(EventKind.MESSAGE_CHUNK, {"content": delta.content, "tool_call_chunks": chunkCalls})

        if delta.finishReason:
            flushed = self.flush(finishReason=delta.finishReason)
            if flushed is not None:
                finals.append(flushed)
        return finals

    def flush(self, forced: bool = False, finishReason: Optional[str] = None) -> Optional[Message]:
        """Close the open turn. Returns None (and emits nothing) when the turn is empty."""
        if not self.hasOpenTurn:
            self.reset()
            return None

        toolCalls = [buffer.toToolCall() for buffer in self._toolBuffers.values()]
        msg = Message(
            role="assistant",
            content="".join(self._text),
            agent=self.agentName,
            toolCalls=toolCalls,
            finishReason=finishReason,
            id=newMessageId(),
        )
        self.reset()
        logger.debug(
            f"{self.agentName}: turn closed ({len(msg.content)} chars, {len(toolCalls)} tool calls, forced={forced})"
        )
        self._emit(
            EventKind.TEXT_FINAL,
            {
                "id": msg.id,
                "content": msg.content,
                "tool_calls": [tc.toDict() for tc in toolCalls],
                "finish_reason": finishReason,
                "forced": forced,
            },
            msg,
        )
        return msg

    def _finalizeToolResult(self, delta: Delta) -> Message:
        callId = delta.toolCallId or newMessageId()
        msg = Message(
            role="tool",
            content=delta.content,
            agent=self.agentName,
            toolCallId=callId,
            toolName=delta.toolName,
            id=f"{callId}:result",
        )
        self._emit(
            EventKind.TOOL_RESULT_FINAL,
            {"id": msg.id, "tool_call_id": callId, "name": delta.toolName, "content": delta.content},
            msg,
        )
        return msg

    def _attachFragment(self, fragment: ToolCallFragment) -> Optional[_ToolBuffer]:
        callId = fragment.id
        if not callId and fragment.index is not None:
            callId = self._indexToId.get(fragment.index)

        if callId:
            buffer = self._toolBuffers.get(callId)
            if buffer is None:
                buffer = self._toolBuffers[callId] = _ToolBuffer(id=callId)
            if fragment.index is not None:
                self._indexToId[fragment.index] = callId
        else:
            buffer = self._resolveOrphan(fragment)
            if buffer is None:
                self.droppedFragments += 1
                return None

        self._latestId = buffer.id
        if fragment.name and not buffer.name:
            buffer.name = fragment.name
        if fragment.arguments:
            buffer.arguments.append(fragment.arguments)
        return buffer

    def _resolveOrphan(self, fragment: ToolCallFragment) -> Optional[_ToolBuffer]:
        openCount = len(self._toolBuffers)
        if self.policy == FragmentPolicy.DROP:
            logger.warning(f"{self.agentName}: dropping id-less tool fragment ({openCount} open calls)")
            return None

        if self.policy == FragmentPolicy.LATEST:
            if self._latestId is None:
                logger.warning(f"{self.agentName}: id-less tool fragment with no open call, dropped")
                return None
            if openCount > 1:
                logger.warning(
                    f"{self.agentName}: id-less tool fragment attributed to latest call '{self._latestId}' "
                    f"out of {openCount} open calls"
                )
            return self._toolBuffers[self._latestId]

        if openCount == 1:
            return next(iter(self._toolBuffers.values()))
        logger.warning(
            f"{self.agentName}: ambiguous id-less tool fragment ({openCount} open calls), dropped: "
            f"{fragment.arguments[:80]!r}"
        )
        return None

    async def _drain(self, deltas: AsyncIterator[Delta], finals: List[Message]):
        async for delta in deltas:
            finals.extend(self.feed(delta))
        if self.hasOpenTurn:
            logger.debug(f"{self.agentName}: stream ended without finish reason")
            flushed = self.flush(forced=True)
            if flushed is not None:
                finals.append(flushed)

    async def consume(self, deltas: AsyncIterator[Delta], ctx) -> Message:
        """
        Drain one model stream to completion, racing the run's cancellation and deadline.
        Returns the last model turn, or an empty assistant message when the stream carried nothing.
        """
        ctx.raiseIfCancelled(self.agentName)
        self.reset()
        finals: List[Message] = []

        drainTask = asyncio.create_task(self._drain(deltas, finals))
        cancelTask = asyncio.create_task(ctx.waitCancelled())
        try:
            done, _ = await asyncio.wait(
                {drainTask, cancelTask},
                timeout=ctx.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelTask.cancel()
            if not drainTask.done():
                drainTask.cancel()
                with suppress(asyncio.CancelledError):
                    await drainTask

        if drainTask not in done:
            if not ctx.isCancelled():
                ctx.cancel("deadline exceeded")
            aclose = getattr(deltas, "aclose", None)
            if aclose is not None:
                with suppress(Exception):
                    await aclose()
            partial = self.flush(forced=True)
            logger.warning(f"{self.agentName}: stream interrupted ({ctx.reason})")
            raise Cancelled(self.agentName, ctx.reason or "cancelled", partial)

        streamError = drainTask.exception()
        if streamError is not None:
            self.flush(forced=True)
            if isinstance(streamError, (Cancelled, InvocationError)):
                raise streamError
            raise InvocationError(self.agentName, f"model stream failed: {streamError}") from streamError

        modelTurns = [m for m in finals if m.role == "assistant"]
        if modelTurns:
            return modelTurns[-1]
        return Message(role="assistant", content="", agent=self.agentName)
