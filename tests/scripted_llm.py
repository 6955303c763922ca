# ABOUTME: Scripted in-memory LLM client used by the test-suite instead of a network model.
# ABOUTME: Replays canned delta sequences or answers through a responder callable.

import asyncio
import json
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

# Fix path to include project root
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.append(project_root)

from llm_client import ILlmClient
from stream_aggregator import Delta, ToolCallFragment


def textTurn(*chunks: str, finishReason: Optional[str] = "stop") -> List[Delta]:
    deltas = [Delta(content=chunk) for chunk in chunks]
    if finishReason:
        deltas.append(Delta(finishReason=finishReason))
    return deltas


def toolTurn(callId: str, name: str, arguments, pieces: int = 2, finishReason: Optional[str] = "tool_calls") -> List[Delta]:
    """One tool call streamed as a header fragment plus id-less argument fragments."""
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    size = max(1, -(-len(raw) // pieces))
    parts = [raw[i:i + size] for i in range(0, len(raw), size)] or [""]
    deltas = [Delta(toolCallFragments=[ToolCallFragment(id=callId, name=name, arguments=parts[0], index=0)])]
    deltas.extend(Delta(toolCallFragments=[ToolCallFragment(arguments=part, index=0)]) for part in parts[1:])
    if finishReason:
        deltas.append(Delta(finishReason=finishReason))
    return deltas


Responder = Callable[[List[Dict], Optional[List[Dict]]], Sequence[Delta]]


class ScriptedLlmClient(ILlmClient):
    """
    Plays back one script per call, in order, or delegates to a responder.
    hangAfter makes a script stall after that many deltas (for cancellation tests).
    """

    def __init__(
        self,
        scripts: Optional[List[Sequence[Delta]]] = None,
        responder: Optional[Responder] = None,
        hangAfter: Optional[int] = None,
        failAfter: Optional[int] = None,
    ):
        self.scripts = list(scripts or [])
        self.responder = responder
        self.hangAfter = hangAfter
        self.failAfter = failAfter
        self.calls: List[Dict] = []
        self.closed = 0

    async def streamCompletion(self, model: str, messages: List[Dict], tools: Optional[List[Dict]] = None):
        self.calls.append({"model": model, "messages": list(messages), "tools": tools})
        if self.responder is not None:
            deltas = list(self.responder(messages, tools))
        elif self.scripts:
            deltas = list(self.scripts.pop(0))
        else:
            deltas = textTurn("")
        try:
            for position, delta in enumerate(deltas):
                if self.failAfter is not None and position == self.failAfter:
                    raise ConnectionError("connection reset by model host")
                if self.hangAfter is not None and position == self.hangAfter:
                    await asyncio.sleep(3600)
                await asyncio.sleep(0)
                yield delta
        finally:
            self.closed += 1


def toolNames(tools: Optional[List[Dict]]) -> List[str]:
    return [tool["function"]["name"] for tool in (tools or [])]


_SUBMISSIONS = {
    "submit_market_analysis": lambda subject: {"report": f"{subject} trades above its 50-day average with rising volume."},
    "submit_social_analysis": lambda subject: {"report": f"Sentiment on {subject} is upbeat this week."},
    "submit_news_analysis": lambda subject: {"report": f"No adverse news for {subject}; sector demand is strong."},
    "submit_fundamentals_analysis": lambda subject: {"report": f"{subject} shows growing margins and low debt."},
    "submit_bull_research": lambda subject: {"research": f"{subject} has clear growth potential."},
    "submit_bear_research": lambda subject: {"research": f"{subject} looks overvalued near resistance."},
    "submit_research_decision": lambda subject: {
        "decision": "The bull case is stronger.",
        "investment_plan": f"Accumulate {subject} in two tranches.",
        "action": "BUY",
    },
    "submit_trading_plan": lambda subject: {
        "plan": f"Buy {subject} at market, stop 8% below. FINAL TRANSACTION PROPOSAL: **BUY**",
        "action": "BUY",
    },
    "submit_final_decision": lambda subject: {
        "final_decision": "Approve with reduced size. FINAL TRANSACTION PROPOSAL: **BUY**",
        "action": "BUY",
    },
}


def tradingResponder(subject: str = "NVDA") -> Responder:
    """Answers every trading node: submission tools where offered, plain text for the risk panel."""
    counter = {"n": 0}

    def respond(messages: List[Dict], tools: Optional[List[Dict]]) -> Sequence[Delta]:
        counter["n"] += 1
        submit = next((name for name in toolNames(tools) if name.startswith("submit_")), None)
        if submit is None:
            stance = "risk"
            system = messages[0]["content"] if messages else ""
            for candidate in ("risky", "safe", "neutral"):
                if f"the {candidate} risk analyst" in system:
                    stance = candidate
            return textTurn(f"The {stance} view: ", "position size is acceptable.")
        return toolTurn(f"call_{counter['n']}", submit, _SUBMISSIONS[submit](subject))

    return respond
