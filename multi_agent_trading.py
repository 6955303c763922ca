# ABOUTME: Core orchestrator for the Multi-Agent Trading Workflow.
# ABOUTME: Manages session lifecycle, MCP tool providers, event fan-out to store and bridge, and report export.

import asyncio
import functools
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import anyio
from mcp import StdioServerParameters

import internal_configs as cfg
import notification_bridge
from agent_engine import McpToolProvider
from graph_engine import CompiledPlan, ExecutionEngine, RunContext
from llm_client import ILlmClient, getLlmClient
from session_store import STATUS_DONE, STATUS_ERROR, STATUS_STREAMING, SessionStore
from stream_aggregator import EventKind, StreamEvent
from trading_agents import buildTradingPlan
from workflow_errors import PersistenceWarning, WorkflowError
from workflow_state import NodeName, ReportPhase, TradingDecision, WorkflowState

# Environment variables are loaded automatically by internal_configs

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

_PERSISTED_EVENTS = (EventKind.TEXT_FINAL, EventKind.TOOL_RESULT_FINAL, EventKind.ERROR)
_ANALYST_NODES = (
    NodeName.MARKET_ANALYST,
    NodeName.SOCIAL_MEDIA_ANALYST,
    NodeName.NEWS_ANALYST,
    NodeName.FUNDAMENTALS_ANALYST,
)


class SessionRecorder:
    """
    Event sink for one run.
    emit() only enqueues; a consumer task persists final turns and forwards every event to the bridge in order.
    """

    def __init__(self, sessionId: Optional[str], store: SessionStore, bridge: notification_bridge.NotificationBridge):
        self.sessionId = sessionId
        self.store = store
        self.bridge = bridge
        self.warnings: List[PersistenceWarning] = []
        self.events: List[StreamEvent] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self._task = asyncio.create_task(self._loop())

    def emit(self, event: StreamEvent):
        self._queue.put_nowait(event)

    async def close(self):
        if self._task is None:
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None

    async def _loop(self):
        while True:
            event = await self._queue.get()
            if event is None:
                break
            self.events.append(event)
            if event.kind in _PERSISTED_EVENTS:
                await self._persist(event)
            payload = event.toPayload()
            payload["session_id"] = self.sessionId
            self._notify(f"agent.{event.kind.value}", payload)

    async def _persist(self, event: StreamEvent):
        if self.sessionId is None:
            return
        msg = event.message
        if event.kind == EventKind.ERROR:
            save = functools.partial(
                self.store.saveMessage, self.sessionId, "system", event.agent,
                event.payload.get("error", ""), finishReason="error",
            )
        else:
            save = functools.partial(
                self.store.saveMessage,
                self.sessionId,
                msg.role,
                msg.agent,
                msg.content,
                toolCalls=[tc.toDict() for tc in msg.toolCalls] or None,
                finishReason=msg.finishReason,
                messageId=msg.id,
                toolCallId=msg.toolCallId,
            )
        try:
            await anyio.to_thread.run_sync(save)
        except Exception as exc:
            self.recordWarning(PersistenceWarning("saveMessage", exc))

    def recordWarning(self, warning: PersistenceWarning):
        logger.warning(f"Persistence warning for session {self.sessionId}: {warning}")
        self.warnings.append(warning)
        self._notify(
            f"agent.{EventKind.PERSISTENCE_WARNING.value}",
            {"event": EventKind.PERSISTENCE_WARNING.value, "session_id": self.sessionId,
             "operation": warning.operation, "error": str(warning.cause)},
        )

    def _notify(self, topic: str, payload: Dict[str, Any]):
        try:
            self.bridge.notify(topic, payload)
        except Exception as exc:
            logger.warning(f"Bridge delivery failed for {topic}: {exc}")


class TradingOrchestrator:
    """Runs the compiled trading graph for one symbol/date at a time and records everything it emits."""

    def __init__(
        self,
        llmClient: Optional[ILlmClient] = None,
        store: Optional[SessionStore] = None,
        bridge: Optional[notification_bridge.NotificationBridge] = None,
        plan: Optional[CompiledPlan] = None,
        maxDebateRounds: int = cfg.config.MAX_DEBATE_ROUNDS,
        maxRiskRounds: int = cfg.config.MAX_RISK_DISCUSS_ROUNDS,
        maxIterations: int = cfg.config.MAX_RECUR_LIMIT,
        timeoutSeconds: float = cfg.config.RUN_TIMEOUT_SECONDS,
        resultsDir: str = cfg.config.RESULTS_DIR,
        exportReports: bool = True,
    ):
        if llmClient is None:
            # Strict environment validation
            cfg.config.verifyConfiguration()
            llmClient = getLlmClient(
                provider=cfg.config.LLM_PROVIDER,
                model=cfg.config.PRIMARY_MODEL,
                apiKey=cfg.config.LLM_API_KEY,
                baseUrl=cfg.config.LOCAL_LLM_URL if cfg.config.LLM_PROVIDER == "local" else (cfg.config.LLM_BASE_URL or None),
                backoffCap=cfg.config.RATE_LIMIT_BACKOFF_CAP
            )
        self.llmClient = llmClient
        self.store = store or SessionStore(cfg.config.SESSION_DB_PATH)
        self.bridge = bridge or notification_bridge.bridge
        self.maxDebateRounds = maxDebateRounds
        self.maxRiskRounds = maxRiskRounds
        self.timeoutSeconds = timeoutSeconds
        self.resultsDir = Path(resultsDir)
        self.exportReports = exportReports

        # Initialize Tool Providers
        self.toolProviders: Dict[str, McpToolProvider] = {}
        if cfg.config.FINANCE_TOOLS_IMAGE and plan is None:
            self.toolProviders["finance"] = McpToolProvider("finance-tools", StdioServerParameters(
                command="docker",
                args=["run", "-i", "--rm", cfg.config.FINANCE_TOOLS_IMAGE],
                env=None
            ))

        analystTools = list(self.toolProviders.values())
        self.plan = plan or buildTradingPlan(
            llmClient,
            toolProviders={str(name): analystTools for name in _ANALYST_NODES},
        )
        self.engine = ExecutionEngine(maxIterations=maxIterations)
        self.decisionHistory: List[TradingDecision] = []
        self.activeRuns: Dict[str, RunContext] = {}

        logger.info(
            f"TradingOrchestrator online. Debate rounds: {maxDebateRounds} | Risk rounds: {maxRiskRounds} | "
            f"Tool providers: {list(self.toolProviders) or 'none'}"
        )

    async def connectAll(self):
        """
        Pre-connects all tool providers in the current task context.
        This ensures all MCP context managers are entered in the same task
        that will eventually call cleanup(), preventing task boundary errors.
        """
        for name, provider in self.toolProviders.items():
            try:
                if not provider.session:
                    await provider.connect()
                    logger.info(f"  Connected: {name}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Log connection errors but continue with other providers
                logger.error(f"  Failed to connect {name}: {e}")

    async def cleanup(self):
        """Teardown of all active mcp tool providers."""
        for provider in self.toolProviders.values():
            await provider.cleanup()

    def cancel(self, sessionId: str, reason: str = "cancelled") -> bool:
        ctx = self.activeRuns.get(sessionId)
        if ctx is None:
            return False
        ctx.cancel(reason)
        return True

    async def _storeCall(self, recorder: Optional[SessionRecorder], operation: str, func, *args):
        """Run a blocking store call off the event loop. Failures become persistence warnings."""
        try:
            return await anyio.to_thread.run_sync(functools.partial(func, *args))
        except Exception as exc:
            warning = PersistenceWarning(operation, exc)
            if recorder is not None:
                recorder.recordWarning(warning)
            else:
                logger.warning(f"Persistence warning: {warning}")
            return None

    async def executeTradingSession(
        self,
        symbol: str,
        tradeDate: Optional[str] = None,
        prompt: Optional[str] = None,
        sessionReady: Optional[asyncio.Future] = None,
    ) -> Dict[str, Any]:
        """
        Full workflow: session bookkeeping, streamed graph execution, status update and report export.
        Returns a result dict; failures are reported under 'error' rather than raised.
        """
        symbol = symbol.strip().upper()
        tradeDate = tradeDate or datetime.now().strftime("%Y-%m-%d")
        prompt = prompt or f"Analyze {symbol} for a trading decision on {tradeDate}"

        await self.connectAll()

        priorDecisions = [d for d in self.decisionHistory if d.symbol == symbol]
        state = WorkflowState(
            symbol, tradeDate, prompt,
            maxDebateRounds=self.maxDebateRounds,
            maxRiskRounds=self.maxRiskRounds,
            priorDecisions=priorDecisions,
        )

        sessionId = await self._storeCall(None, "createSession", self.store.createSession, symbol, tradeDate, prompt)
        recorder = SessionRecorder(sessionId, self.store, self.bridge)
        recorder.start()
        if sessionId is not None:
            await self._storeCall(recorder, "saveMessage", self.store.saveMessage, sessionId, "user", None, prompt)
            await self._storeCall(recorder, "updateSessionStatus", self.store.updateSessionStatus, sessionId, STATUS_STREAMING)

        ctx = RunContext(timeout=self.timeoutSeconds or None)
        runKey = sessionId or f"run_{id(ctx)}"
        self.activeRuns[runKey] = ctx
        if sessionReady is not None and not sessionReady.done():
            sessionReady.set_result(runKey)

        logger.info(f"Trading session {runKey} started: {symbol} @ {tradeDate}")
        try:
            await self.engine.stream(self.plan, state, recorder.emit, ctx)
        except WorkflowError as exc:
            logger.error(f"Trading session {runKey} failed: {exc}")
            await recorder.close()
            if sessionId is not None:
                await self._storeCall(recorder, "updateSessionStatus", self.store.updateSessionStatus, sessionId, STATUS_ERROR)
            return {
                "session_id": sessionId,
                "symbol": symbol,
                "date": tradeDate,
                "status": STATUS_ERROR,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "state": state.snapshot(),
                "warnings": [str(w) for w in recorder.warnings],
            }
        except Exception:
            await recorder.close()
            if sessionId is not None:
                await self._storeCall(recorder, "updateSessionStatus", self.store.updateSessionStatus, sessionId, STATUS_ERROR)
            raise
        finally:
            self.activeRuns.pop(runKey, None)

        await recorder.close()
        if sessionId is not None:
            await self._storeCall(recorder, "updateSessionStatus", self.store.updateSessionStatus, sessionId, STATUS_DONE)

        if state.finalDecision is not None:
            self.decisionHistory.append(state.finalDecision)

        result = {
            "session_id": sessionId,
            "symbol": symbol,
            "date": tradeDate,
            "status": STATUS_DONE,
            "decision": state.finalDecision.toDict() if state.finalDecision else None,
            "state": state.snapshot(),
            "warnings": [str(w) for w in recorder.warnings],
            "timestamp": datetime.now().isoformat(),
        }
        if self.exportReports:
            result["report_path"] = str(self.exportTradingReport(state))
        return result

    def exportTradingReport(self, state: WorkflowState) -> Path:
        """Generates and writes a formatted markdown report based on the final workflow state."""
        creationTime = datetime.now().strftime("%Y%m%d_%H%M%S")
        outputDir = self.resultsDir / state.subjectId / state.asOfDate
        outputDir.mkdir(parents=True, exist_ok=True)
        outputFilepath = outputDir / f"trading_report_{creationTime}.md"

        decision = state.finalDecision
        compositeReport = cfg.MARKDOWN_REPORT_TEMPLATE.format(
            subject=state.subjectId,
            date=state.asOfDate,
            timestamp=datetime.now().isoformat(),
            action=decision.action if decision else "N/A",
            confidence=f"{decision.confidence:.2f}" if decision else "N/A",
            prompt=state.prompt,
            market=state.report(ReportPhase.MARKET) or "N/A",
            sentiment=state.report(ReportPhase.SENTIMENT) or "N/A",
            news=state.report(ReportPhase.NEWS) or "N/A",
            fundamentals=state.report(ReportPhase.FUNDAMENTALS) or "N/A",
            debateHistory=state.debate.history or "N/A",
            debateDecision=state.debate.judgeDecision or "N/A",
            investmentPlan=state.investmentPlan or "N/A",
            traderPlan=state.traderPlan or "N/A",
            riskHistory=state.risk.history or "N/A",
            finalDecision=state.finalTradeDecision or "N/A",
        )

        with open(outputFilepath, 'w', encoding='utf-8') as artifact:
            artifact.write(compositeReport)
        logger.info(f"Trading report exported to {outputFilepath}")
        return outputFilepath


def _promptInt(label: str, default: int) -> int:
    raw = input(f"{label} [{default}]: ").strip()
    try:
        return max(1, int(raw)) if raw else default
    except ValueError:
        print(f"Invalid number, using {default}")
        return default


async def main():
    try:
        cfg.config.verifyConfiguration()
    except ValueError as e:
        print(e)
        return

    symbol = input(f"Enter ticker symbol [{cfg.config.DEFAULT_SYMBOL}]: ").strip() or cfg.config.DEFAULT_SYMBOL
    today = datetime.now().strftime("%Y-%m-%d")
    tradeDate = input(f"Trade date (YYYY-MM-DD) [{today}]: ").strip() or today
    debateRounds = _promptInt("Debate rounds", cfg.config.MAX_DEBATE_ROUNDS)
    riskRounds = _promptInt("Risk discussion rounds", cfg.config.MAX_RISK_DISCUSS_ROUNDS)

    orchestrator = TradingOrchestrator(maxDebateRounds=debateRounds, maxRiskRounds=riskRounds)

    try:
        sessionData = await orchestrator.executeTradingSession(symbol, tradeDate)

        if "error" not in sessionData:
            decision = sessionData["decision"] or {}
            print("\n=== TRADING ANALYSIS COMPLETE ===")
            print(f"Decision: {decision.get('action', 'N/A')} | Confidence: {decision.get('confidence', 'N/A')}")
            print(f"Report: {sessionData.get('report_path')}")
        else:
            print(f"\nWorkflow Fault ({sessionData['error_type']}): {sessionData['error']}")

    finally:
        # Explicit cleanup in the same async context
        logger.info("Cleaning up orchestrator resources...")
        try:
            await orchestrator.cleanup()
        except asyncio.CancelledError:
            logger.debug("Cleanup cancelled during shutdown")
        except Exception as e:
            logger.debug(f"Cleanup error: {e}")


if __name__ == "__main__":
    asyncio.run(main())
