# ABOUTME: Shared mutable state threaded through every node of a trading workflow run.
# ABOUTME: Exposes mutation only through narrow setters; debate and risk sub-states keep bounded counters.

import json
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from workflow_errors import StateMutationError

END = "__end__"


class NodeName(str, Enum):
    """Closed set of node identities in the trading plan. END is the terminal sentinel."""
    MARKET_ANALYST = "market_analyst"
    SOCIAL_MEDIA_ANALYST = "social_media_analyst"
    NEWS_ANALYST = "news_analyst"
    FUNDAMENTALS_ANALYST = "fundamentals_analyst"
    BULL_RESEARCHER = "bull_researcher"
    BEAR_RESEARCHER = "bear_researcher"
    RESEARCH_MANAGER = "research_manager"
    TRADER = "trader"
    RISKY_ANALYST = "risky_analyst"
    SAFE_ANALYST = "safe_analyst"
    NEUTRAL_ANALYST = "neutral_analyst"
    RISK_JUDGE = "risk_judge"
    END = "__end__"

    def __str__(self) -> str:
        return self.value


class ReportPhase(str, Enum):
    MARKET = "market"
    SENTIMENT = "sentiment"
    NEWS = "news"
    FUNDAMENTALS = "fundamentals"


class WorkflowPhase(str, Enum):
    ANALYSIS = "analysis"
    DEBATE = "debate"
    TRADING = "trading"
    RISK = "risk"


PHASE_ORDER: Tuple[WorkflowPhase, ...] = (
    WorkflowPhase.ANALYSIS,
    WorkflowPhase.DEBATE,
    WorkflowPhase.TRADING,
    WorkflowPhase.RISK,
)


class DebateSide(str, Enum):
    BULL = "Bull"
    BEAR = "Bear"


class RiskStance(str, Enum):
    RISKY = "Risky"
    SAFE = "Safe"
    NEUTRAL = "Neutral"


# Fixed speaking order of the risk discussion
RISK_ROTATION: Tuple[RiskStance, ...] = (RiskStance.RISKY, RiskStance.SAFE, RiskStance.NEUTRAL)


@dataclass
class ToolCall:
    """One fully reassembled tool call: identifier, function name and raw JSON argument string."""
    id: str
    name: str
    arguments: str = ""

    def parsedArguments(self) -> Dict[str, Any]:
        """Decode the argument string. Undecodable input is kept under '_raw'."""
        if not self.arguments or not self.arguments.strip():
            return {}
        try:
            parsed = json.loads(self.arguments)
        except (json.JSONDecodeError, TypeError):
            return {"_raw": self.arguments}
        if not isinstance(parsed, dict):
            return {"_raw": self.arguments}
        return parsed

    def toDict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Message:
    """Role-tagged conversation message. Tool results carry toolCallId/toolName."""
    role: str
    content: str = ""
    agent: Optional[str] = None
    toolCalls: List[ToolCall] = field(default_factory=list)
    toolCallId: Optional[str] = None
    toolName: Optional[str] = None
    finishReason: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @property
    def isEmpty(self) -> bool:
        return not self.content and not self.toolCalls

    @property
    def message(self) -> Dict[str, Any]:
        """Returns the standard chat-completions message dict for history appending."""
        msg: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.toolCalls:
            msg["tool_calls"] = [tc.toDict() for tc in self.toolCalls]
        if self.role == "tool":
            msg["tool_call_id"] = self.toolCallId
            if self.toolName:
                msg["name"] = self.toolName
        return msg

    def findToolCall(self, name: str) -> Optional[ToolCall]:
        for toolCall in self.toolCalls:
            if toolCall.name == name:
                return toolCall
        return None


@dataclass
class TradingDecision:
    """Actionable signal extracted from the final risk judgment."""
    symbol: str
    date: str
    action: str
    confidence: float
    reasoning: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def toDict(self) -> Dict[str, Any]:
        return asdict(self)


_PROPOSAL_PATTERN = re.compile(r"FINAL TRANSACTION PROPOSAL:\s*\**\s*(BUY|SELL|HOLD)", re.IGNORECASE)
_SIGNAL_PATTERNS = {
    "BUY": [
        re.compile(r"\b(buy|purchase|long|bullish|upward|invest)\b", re.IGNORECASE),
        re.compile(r"\b(undervalued|oversold|growth potential|opportunity)\b", re.IGNORECASE),
    ],
    "SELL": [
        re.compile(r"\b(sell|short|bearish|downward|divest|avoid)\b", re.IGNORECASE),
        re.compile(r"\b(overvalued|overbought|decline)\b", re.IGNORECASE),
    ],
    "HOLD": [
        re.compile(r"\b(hold|maintain|neutral|wait|sideways)\b", re.IGNORECASE),
        re.compile(r"\b(no action|stay put|keep position)\b", re.IGNORECASE),
    ],
}


def extractTradingSignal(text: str, symbol: str, date: str) -> TradingDecision:
    """
    Derive BUY/SELL/HOLD from free text.
    An explicit FINAL TRANSACTION PROPOSAL wins; otherwise keyword scores decide and ties fall back to HOLD.
    """
    reasoning = (text or "").strip()[:500]
    explicit = _PROPOSAL_PATTERN.search(text or "")
    if explicit:
        return TradingDecision(symbol, date, explicit.group(1).upper(), 0.9, reasoning)

    scores = {
        action: sum(len(p.findall(text or "")) for p in patterns)
        for action, patterns in _SIGNAL_PATTERNS.items()
    }
    total = sum(scores.values())
    if total == 0:
        return TradingDecision(symbol, date, "HOLD", 0.5, reasoning)

    action = "HOLD"
    if scores["BUY"] > scores["SELL"] and scores["BUY"] > scores["HOLD"]:
        action = "BUY"
    elif scores["SELL"] > scores["BUY"] and scores["SELL"] > scores["HOLD"]:
        action = "SELL"
    confidence = round(min(0.95, 0.5 + 0.5 * scores[action] / total), 2)
    return TradingDecision(symbol, date, action, confidence, reasoning)


class DebateState:
    """Two-sided investment debate. The turn counter only grows; the round ceiling is fixed."""

    def __init__(self, maxRounds: int = 1):
        if maxRounds < 1:
            raise ValueError("Debate needs at least one round")
        self._maxRounds = maxRounds
        self._count = 0
        self.history = ""
        self.sideHistory: Dict[DebateSide, str] = {side: "" for side in DebateSide}
        self.currentResponse = ""
        self.judgeDecision = ""

    @property
    def maxRounds(self) -> int:
        return self._maxRounds

    @property
    def count(self) -> int:
        return self._count

    @property
    def turnCeiling(self) -> int:
        return 2 * self._maxRounds

    @property
    def bullHistory(self) -> str:
        return self.sideHistory[DebateSide.BULL]

    @property
    def bearHistory(self) -> str:
        return self.sideHistory[DebateSide.BEAR]

    def _recordTurn(self, side: DebateSide, text: str):
        argument = f"{side.value} Researcher: {text}"
        self.history = f"{self.history}\n{argument}" if self.history else argument
        self.sideHistory[side] = f"{self.sideHistory[side]}\n{argument}" if self.sideHistory[side] else argument
        self.currentResponse = argument
        self._count += 1

    def toDict(self) -> Dict[str, Any]:
        return {
            "history": self.history,
            "bull_history": self.bullHistory,
            "bear_history": self.bearHistory,
            "current_response": self.currentResponse,
            "judge_decision": self.judgeDecision,
            "count": self._count,
            "max_rounds": self._maxRounds,
        }


class RiskDiscussionState:
    """Three-stance risk discussion. One round is one full rotation of RISK_ROTATION."""

    def __init__(self, maxRounds: int = 1):
        if maxRounds < 1:
            raise ValueError("Risk discussion needs at least one round")
        self._maxRounds = maxRounds
        self._count = 0
        self.history = ""
        self.stanceHistory: Dict[RiskStance, str] = {stance: "" for stance in RiskStance}
        self.currentResponses: Dict[RiskStance, str] = {stance: "" for stance in RiskStance}
        self.latestSpeaker: Optional[RiskStance] = None
        self.judgeDecision = ""

    @property
    def maxRounds(self) -> int:
        return self._maxRounds

    @property
    def count(self) -> int:
        return self._count

    @property
    def turnCeiling(self) -> int:
        return len(RISK_ROTATION) * self._maxRounds

    def _recordTurn(self, stance: RiskStance, text: str):
        argument = f"{stance.value} Analyst: {text}"
        self.history = f"{self.history}\n{argument}" if self.history else argument
        previous = self.stanceHistory[stance]
        self.stanceHistory[stance] = f"{previous}\n{argument}" if previous else argument
        self.currentResponses[stance] = argument
        self.latestSpeaker = stance
        self._count += 1

    def toDict(self) -> Dict[str, Any]:
        return {
            "history": self.history,
            "risky_history": self.stanceHistory[RiskStance.RISKY],
            "safe_history": self.stanceHistory[RiskStance.SAFE],
            "neutral_history": self.stanceHistory[RiskStance.NEUTRAL],
            "latest_speaker": self.latestSpeaker.value if self.latestSpeaker else "",
            "current_risky_response": self.currentResponses[RiskStance.RISKY],
            "current_safe_response": self.currentResponses[RiskStance.SAFE],
            "current_neutral_response": self.currentResponses[RiskStance.NEUTRAL],
            "judge_decision": self.judgeDecision,
            "count": self._count,
            "max_rounds": self._maxRounds,
        }


class WorkflowState:
    """
    Single mutable record for one run.
    Nodes read freely but write only through the setters below; the engine owns the instance.
    """

    def __init__(
        self,
        subjectId: str,
        asOfDate: str,
        prompt: str,
        maxDebateRounds: int = 1,
        maxRiskRounds: int = 1,
        priorDecisions: Iterable[TradingDecision] = (),
    ):
        if not subjectId or not subjectId.strip():
            raise ValueError("subjectId is required")
        self._subjectId = subjectId.strip().upper()
        self._asOfDate = asOfDate
        self._prompt = prompt
        self._history: List[Message] = [Message.user(prompt)]
        self._reports: Dict[ReportPhase, str] = {phase: "" for phase in ReportPhase}
        self._reportDone: Dict[ReportPhase, bool] = {phase: False for phase in ReportPhase}
        self._phaseDone: Dict[WorkflowPhase, bool] = {phase: False for phase in WorkflowPhase}
        self._workflowComplete = False
        self._phase = WorkflowPhase.ANALYSIS
        self._investmentPlan = ""
        self._traderPlan = ""
        self._finalTradeDecision = ""
        self._finalDecision: Optional[TradingDecision] = None
        self._priorDecisions: Tuple[TradingDecision, ...] = tuple(priorDecisions)
        self.debate = DebateState(maxDebateRounds)
        self.risk = RiskDiscussionState(maxRiskRounds)

        # Routing field and per-visit bookkeeping
        self._currentNode: Optional[str] = None
        self._visitNode: Optional[str] = None
        self._branchOwnsRoute = False
        self._routeWrites = 0
        self._proposedRoute: Optional[str] = None

    # --- Read access ---

    @property
    def subjectId(self) -> str:
        return self._subjectId

    @property
    def asOfDate(self) -> str:
        return self._asOfDate

    @property
    def prompt(self) -> str:
        return self._prompt

    @property
    def conversationHistory(self) -> Tuple[Message, ...]:
        return tuple(self._history)

    @property
    def currentNode(self) -> Optional[str]:
        return self._currentNode

    @property
    def visitNode(self) -> Optional[str]:
        """Node whose visit is in progress, or the last one visited."""
        return self._visitNode

    @property
    def routeWrites(self) -> int:
        """Number of writes to currentNode during the current visit."""
        return self._routeWrites

    @property
    def proposedRoute(self) -> Optional[str]:
        return self._proposedRoute

    @property
    def phase(self) -> WorkflowPhase:
        return self._phase

    @property
    def workflowComplete(self) -> bool:
        return self._workflowComplete

    @property
    def investmentPlan(self) -> str:
        return self._investmentPlan

    @property
    def traderPlan(self) -> str:
        return self._traderPlan

    @property
    def finalTradeDecision(self) -> str:
        return self._finalTradeDecision

    @property
    def finalDecision(self) -> Optional[TradingDecision]:
        return self._finalDecision

    @property
    def priorDecisions(self) -> Tuple[TradingDecision, ...]:
        return self._priorDecisions

    def report(self, phase: ReportPhase) -> str:
        return self._reports[ReportPhase(phase)]

    def isReportComplete(self, phase: ReportPhase) -> bool:
        return self._reportDone[ReportPhase(phase)]

    def isPhaseComplete(self, phase: WorkflowPhase) -> bool:
        return self._phaseDone[WorkflowPhase(phase)]

    # --- Setters ---

    def appendMessage(self, msg: Message):
        self._history.append(msg)

    def setReport(self, phase: ReportPhase, text: str):
        phase = ReportPhase(phase)
        self._reports[phase] = self._writeOnce(f"{phase.value} report", self._reports[phase], text)
        self._reportDone[phase] = True

    def recordDebateTurn(self, side: DebateSide, text: str):
        self.debate._recordTurn(DebateSide(side), text)

    def recordRiskTurn(self, stance: RiskStance, text: str):
        self.risk._recordTurn(RiskStance(stance), text)

    def setDebateDecision(self, text: str):
        self.debate.judgeDecision = self._writeOnce("debate decision", self.debate.judgeDecision, text)

    def setInvestmentPlan(self, text: str):
        self._investmentPlan = self._writeOnce("investment plan", self._investmentPlan, text)

    def setTraderPlan(self, text: str):
        self._traderPlan = self._writeOnce("trader plan", self._traderPlan, text)

    def setFinalDecision(self, text: str, decision: TradingDecision):
        if self._finalDecision is not None and self._finalTradeDecision != text:
            raise StateMutationError("final decision is already set")
        self._finalTradeDecision = text
        self.risk.judgeDecision = text
        self._finalDecision = decision

    def markPhaseComplete(self, phase: WorkflowPhase):
        phase = WorkflowPhase(phase)
        self._phaseDone[phase] = True
        nextIndex = PHASE_ORDER.index(phase) + 1
        if nextIndex < len(PHASE_ORDER) and PHASE_ORDER.index(self._phase) < nextIndex:
            self._phase = PHASE_ORDER[nextIndex]

    def markWorkflowComplete(self):
        self._workflowComplete = True

    def setRoute(self, nodeName: str):
        """
        Route step's write of the next node.
        Inside a branch-owned visit the value is only kept as a proposal; the branch decides.
        """
        nodeName = str(nodeName)
        if self._branchOwnsRoute:
            self._proposedRoute = nodeName
            return
        if self._routeWrites:
            if self._currentNode == nodeName:
                return
            raise StateMutationError(
                f"route already set to '{self._currentNode}' during visit of '{self._visitNode}'"
            )
        self._currentNode = nodeName
        self._routeWrites += 1

    # --- Engine hooks ---

    def _beginVisit(self, nodeName: str, branchOwnsRoute: bool):
        self._visitNode = str(nodeName)
        self._branchOwnsRoute = branchOwnsRoute
        self._routeWrites = 0
        self._proposedRoute = None

    def _applyRoute(self, nodeName: str):
        self._currentNode = str(nodeName)
        self._routeWrites += 1

    @staticmethod
    def _writeOnce(fieldName: str, current: str, value: str) -> str:
        if current and current != value:
            raise StateMutationError(f"{fieldName} is already set")
        return value

    def snapshot(self) -> Dict[str, Any]:
        """JSON-compatible view of the whole state for persistence and reports."""
        return {
            "company_of_interest": self._subjectId,
            "trade_date": self._asOfDate,
            "prompt": self._prompt,
            "messages": [m.message for m in self._history],
            "market_report": self._reports[ReportPhase.MARKET],
            "sentiment_report": self._reports[ReportPhase.SENTIMENT],
            "news_report": self._reports[ReportPhase.NEWS],
            "fundamentals_report": self._reports[ReportPhase.FUNDAMENTALS],
            "investment_debate_state": self.debate.toDict(),
            "risk_debate_state": self.risk.toDict(),
            "investment_plan": self._investmentPlan,
            "trader_investment_plan": self._traderPlan,
            "final_trade_decision": self._finalTradeDecision,
            "decision": self._finalDecision.toDict() if self._finalDecision else None,
            "phase": self._phase.value,
            "phase_complete": {p.value: done for p, done in self._phaseDone.items()},
            "workflow_complete": self._workflowComplete,
            "goto": str(self._currentNode) if self._currentNode is not None else None,
            "previous_decisions": [d.toDict() for d in self._priorDecisions],
        }
