# ABOUTME: Graph builder, immutable compiled plan and the sequential execution engine.
# ABOUTME: Also defines the per-run context carrying cancellation, deadline and the event sink.

import asyncio
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol, Tuple

from stream_aggregator import EventKind, EventSink, StreamEvent
from workflow_errors import (
    Cancelled,
    DuplicateNodeError,
    GraphValidationError,
    IterationLimitExceededError,
    RoutingError,
    UnknownNodeError,
    WorkflowError,
)
from workflow_state import END, Message, WorkflowState

logger = logging.getLogger(__name__)

BranchFn = Callable[[WorkflowState], str]


class RunContext:
    """Cancellation signal, optional deadline and event sink shared by every step of one run."""

    def __init__(self, timeout: Optional[float] = None, emit: Optional[EventSink] = None):
        self._cancelEvent = asyncio.Event()
        self.reason: Optional[str] = None
        self.deadline = time.monotonic() + timeout if timeout else None
        self.emit = emit

    def cancel(self, reason: str = "cancelled"):
        if not self._cancelEvent.is_set():
            self.reason = reason
            self._cancelEvent.set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def isCancelled(self) -> bool:
        if not self._cancelEvent.is_set() and self.deadline is not None and self.remaining() == 0:
            self.cancel("deadline exceeded")
        return self._cancelEvent.is_set()

    def raiseIfCancelled(self, nodeName: Optional[str] = None):
        if self.isCancelled():
            raise Cancelled(nodeName, self.reason or "cancelled")

    async def waitCancelled(self):
        await self._cancelEvent.wait()

    def publish(self, kind: EventKind, agent: Optional[str] = None, **payload):
        if self.emit is not None:
            self.emit(StreamEvent(kind=kind, agent=agent, payload=payload))


class WorkflowNode(Protocol):
    name: str

    async def run(self, ctx: RunContext, state: WorkflowState) -> Message:
        ...


@dataclass(frozen=True)
class PlanEntry:
    node: WorkflowNode
    edge: Optional[str] = None
    branch: Optional[BranchFn] = None
    allowedTargets: Tuple[str, ...] = ()

    @property
    def successors(self) -> Tuple[str, ...]:
        if self.branch is not None:
            return self.allowedTargets
        return (self.edge,)


@dataclass(frozen=True)
class CompiledPlan:
    """Read-only routing table. Safe to share across concurrent runs."""
    entries: Mapping[str, PlanEntry]
    startNode: str
    terminal: str = END

    def entry(self, name: str) -> PlanEntry:
        return self.entries[name]

    @property
    def nodeNames(self) -> Tuple[str, ...]:
        return tuple(self.entries)


class GraphBuilder:
    """Collects nodes, plain edges and conditional branches; compile() validates everything at once."""

    def __init__(self):
        self._nodes: Dict[str, WorkflowNode] = {}
        self._edges: Dict[str, str] = {}
        self._branches: Dict[str, Tuple[BranchFn, Tuple[str, ...]]] = {}
        self._problems = []

    def addNode(self, name: str, node: WorkflowNode) -> "GraphBuilder":
        name = str(name)
        if name == END:
            raise GraphValidationError("The terminal sentinel cannot be registered as a node")
        if name in self._nodes:
            raise DuplicateNodeError(name)
        self._nodes[name] = node
        return self

    def addEdge(self, fromNode: str, toNode: str) -> "GraphBuilder":
        fromNode, toNode = str(fromNode), str(toNode)
        if fromNode in self._edges or fromNode in self._branches:
            self._problems.append(f"Node '{fromNode}' already has an outgoing edge or branch")
        else:
            self._edges[fromNode] = toNode
        return self

    def addBranch(self, fromNode: str, branchFn: BranchFn, allowedTargets: Iterable[str]) -> "GraphBuilder":
        fromNode = str(fromNode)
        if fromNode in self._edges or fromNode in self._branches:
            self._problems.append(f"Node '{fromNode}' already has an outgoing edge or branch")
        else:
            self._branches[fromNode] = (branchFn, tuple(str(t) for t in allowedTargets))
        return self

    def compile(self, startNode: str) -> CompiledPlan:
        startNode = str(startNode)
        if self._problems:
            raise GraphValidationError("; ".join(self._problems))
        if startNode not in self._nodes:
            raise UnknownNodeError(startNode, referencedBy="start")

        known = set(self._nodes) | {END}
        for fromNode, toNode in self._edges.items():
            if fromNode not in self._nodes:
                raise UnknownNodeError(fromNode, referencedBy="edge source")
            if toNode not in known:
                raise UnknownNodeError(toNode, referencedBy=fromNode)
        for fromNode, (_, targets) in self._branches.items():
            if fromNode not in self._nodes:
                raise UnknownNodeError(fromNode, referencedBy="branch source")
            if not targets:
                raise GraphValidationError(f"Branch from '{fromNode}' declares no targets")
            for target in targets:
                if target not in known:
                    raise UnknownNodeError(target, referencedBy=fromNode)

        dangling = [n for n in self._nodes if n not in self._edges and n not in self._branches]
        if dangling:
            raise GraphValidationError(f"Nodes without an outgoing edge or branch: {', '.join(dangling)}")

        entries = {}
        for name, node in self._nodes.items():
            if name in self._branches:
                branchFn, targets = self._branches[name]
                entries[name] = PlanEntry(node=node, branch=branchFn, allowedTargets=targets)
            else:
                entries[name] = PlanEntry(node=node, edge=self._edges[name])

        logger.info(f"Compiled plan: {len(entries)} nodes, start '{startNode}'")
        return CompiledPlan(entries=MappingProxyType(entries), startNode=startNode)


class ExecutionEngine:
    """
    Drives one plan over one state, strictly one node at a time.
    The node's route step (or the branch wrapping it) writes the next node; the engine reads it once.
    """

    def __init__(self, maxIterations: int = 100):
        if maxIterations < 1:
            raise ValueError("maxIterations must be positive")
        self.maxIterations = maxIterations

    async def run(self, plan: CompiledPlan, state: WorkflowState, ctx: Optional[RunContext] = None) -> WorkflowState:
        """Blocking mode: returns the final state or raises a WorkflowError."""
        return await self._execute(plan, state, ctx or RunContext())

    async def stream(
        self,
        plan: CompiledPlan,
        state: WorkflowState,
        emit: EventSink,
        ctx: Optional[RunContext] = None,
    ) -> WorkflowState:
        """Streaming mode: lifecycle events go to emit; a failure emits one error event and no finished event."""
        ctx = ctx or RunContext()
        ctx.emit = emit
        ctx.publish(EventKind.RUN_START, subject=state.subjectId, date=state.asOfDate, start=plan.startNode)
        try:
            finalState = await self._execute(plan, state, ctx)
        except WorkflowError as exc:
            ctx.publish(
                EventKind.ERROR,
                agent=getattr(exc, "nodeName", None),
                error=str(exc),
                type=type(exc).__name__,
            )
            raise
        except Exception as exc:
            logger.error(f"Unexpected {type(exc).__name__} during visit of {state.visitNode}: {exc}")
            ctx.publish(
                EventKind.ERROR,
                agent=state.visitNode,
                error=str(exc),
                type=type(exc).__name__,
            )
            raise
        ctx.publish(EventKind.FINISHED, status="completed")
        return finalState

    async def _execute(self, plan: CompiledPlan, state: WorkflowState, ctx: RunContext) -> WorkflowState:
        current = plan.startNode
        iterations = 0

        while current != plan.terminal:
            if iterations >= self.maxIterations:
                logger.error(f"Iteration ceiling {self.maxIterations} reached at '{current}'")
                raise IterationLimitExceededError(current, iterations)
            ctx.raiseIfCancelled(current)

            entry = plan.entry(current)
            state._beginVisit(current, branchOwnsRoute=entry.branch is not None)
            logger.info(f"Step {iterations + 1}: running '{current}'")
            await entry.node.run(ctx, state)
            iterations += 1

            self._resolveRoute(current, entry, state)
            nextNode = state.currentNode
            if nextNode is None or (nextNode not in plan.entries and nextNode != plan.terminal):
                raise RoutingError(current, nextNode, entry.successors)
            logger.info(f"'{current}' -> '{nextNode}'")
            current = nextNode

        logger.info(f"Workflow finished after {iterations} node executions")
        return state

    @staticmethod
    def _resolveRoute(current: str, entry: PlanEntry, state: WorkflowState):
        if entry.branch is not None:
            target = str(entry.branch(state))
            if target not in entry.allowedTargets:
                raise RoutingError(current, target, entry.allowedTargets)
            proposed = state.proposedRoute
            if proposed is not None and str(proposed) != target:
                logger.debug(f"'{current}' proposed '{proposed}', branch chose '{target}'")
            state._applyRoute(target)
            return

        if state.routeWrites == 0:
            logger.debug(f"'{current}' wrote no route, following edge to '{entry.edge}'")
            state._applyRoute(entry.edge)
        elif str(state.currentNode) != entry.edge:
            raise RoutingError(current, state.currentNode, entry.successors)
