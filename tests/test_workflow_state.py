# ABOUTME: Unit tests for the shared workflow state and its setter contract.
# ABOUTME: Covers write-once fields, debate/risk bookkeeping, route ownership and signal extraction.

import sys
from pathlib import Path

import pytest

# Fix path to include project root
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.append(project_root)

from workflow_errors import StateMutationError
from workflow_state import (
    END,
    DebateSide,
    Message,
    NodeName,
    ReportPhase,
    RiskStance,
    ToolCall,
    TradingDecision,
    WorkflowPhase,
    WorkflowState,
    extractTradingSignal,
)


def _state(**kwargs) -> WorkflowState:
    return WorkflowState("nvda", "2024-05-10", "Analyze NVDA", **kwargs)


def test_initial_state_is_zeroed():
    state = _state()
    assert state.subjectId == "NVDA"
    assert state.asOfDate == "2024-05-10"
    assert [m.role for m in state.conversationHistory] == ["user"]
    assert state.debate.count == 0
    assert state.risk.count == 0
    assert state.risk.latestSpeaker is None
    assert state.currentNode is None
    assert state.phase == WorkflowPhase.ANALYSIS
    assert state.finalDecision is None
    assert not state.workflowComplete


def test_subject_is_required():
    with pytest.raises(ValueError):
        WorkflowState("  ", "2024-05-10", "prompt")


def test_round_ceiling_must_be_positive():
    with pytest.raises(ValueError):
        _state(maxDebateRounds=0)
    with pytest.raises(ValueError):
        _state(maxRiskRounds=0)


def test_history_is_append_only_view():
    state = _state()
    state.appendMessage(Message(role="assistant", content="hello", agent="market_analyst"))
    history = state.conversationHistory
    assert isinstance(history, tuple)
    assert history[-1].content == "hello"


def test_report_is_write_once():
    state = _state()
    state.setReport(ReportPhase.MARKET, "uptrend")
    state.setReport(ReportPhase.MARKET, "uptrend")
    assert state.report(ReportPhase.MARKET) == "uptrend"
    assert state.isReportComplete(ReportPhase.MARKET)
    assert not state.isReportComplete(ReportPhase.NEWS)
    with pytest.raises(StateMutationError):
        state.setReport(ReportPhase.MARKET, "downtrend")


def test_plans_are_write_once():
    state = _state()
    state.setInvestmentPlan("accumulate")
    state.setTraderPlan("buy 100 shares")
    state.setDebateDecision("bull wins")
    with pytest.raises(StateMutationError):
        state.setInvestmentPlan("sell everything")
    with pytest.raises(StateMutationError):
        state.setTraderPlan("sell")
    with pytest.raises(StateMutationError):
        state.setDebateDecision("bear wins")


def test_final_decision_is_set_at_most_once():
    state = _state()
    decision = TradingDecision("NVDA", "2024-05-10", "BUY", 0.8, "strong")
    state.setFinalDecision("approve", decision)
    state.setFinalDecision("approve", decision)
    assert state.finalDecision.action == "BUY"
    assert state.risk.judgeDecision == "approve"
    with pytest.raises(StateMutationError):
        state.setFinalDecision("reject", TradingDecision("NVDA", "2024-05-10", "SELL", 0.8, "weak"))


def test_debate_turns_accumulate():
    state = _state(maxDebateRounds=2)
    state.recordDebateTurn(DebateSide.BULL, "growth")
    state.recordDebateTurn(DebateSide.BEAR, "valuation")
    debate = state.debate
    assert debate.count == 2
    assert debate.turnCeiling == 4
    assert "growth" in debate.bullHistory and "growth" not in debate.bearHistory
    assert debate.history.splitlines() == ["Bull Researcher: growth", "Bear Researcher: valuation"]
    assert debate.currentResponse == "Bear Researcher: valuation"


def test_risk_turns_track_latest_speaker():
    state = _state()
    state.recordRiskTurn(RiskStance.RISKY, "go big")
    state.recordRiskTurn(RiskStance.SAFE, "hedge")
    risk = state.risk
    assert risk.count == 2
    assert risk.turnCeiling == 3
    assert risk.latestSpeaker == RiskStance.SAFE
    assert risk.currentResponses[RiskStance.RISKY] == "Risky Analyst: go big"
    assert risk.stanceHistory[RiskStance.NEUTRAL] == ""


def test_counters_cannot_be_assigned():
    state = _state()
    with pytest.raises(AttributeError):
        state.debate.count = 5
    with pytest.raises(AttributeError):
        state.risk.maxRounds = 9


def test_phase_flags_are_monotonic():
    state = _state()
    state.markPhaseComplete(WorkflowPhase.ANALYSIS)
    assert state.phase == WorkflowPhase.DEBATE
    state.markPhaseComplete(WorkflowPhase.DEBATE)
    state.markPhaseComplete(WorkflowPhase.ANALYSIS)
    assert state.phase == WorkflowPhase.TRADING
    assert state.isPhaseComplete(WorkflowPhase.ANALYSIS)
    state.markWorkflowComplete()
    assert state.workflowComplete


def test_route_written_once_per_plain_visit():
    state = _state()
    state._beginVisit(NodeName.MARKET_ANALYST, branchOwnsRoute=False)
    state.setRoute(NodeName.SOCIAL_MEDIA_ANALYST)
    state.setRoute(NodeName.SOCIAL_MEDIA_ANALYST)
    assert state.currentNode == "social_media_analyst"
    assert state.routeWrites == 1
    with pytest.raises(StateMutationError):
        state.setRoute(NodeName.NEWS_ANALYST)


def test_route_in_branch_visit_is_only_a_proposal():
    state = _state()
    state._beginVisit(NodeName.MARKET_ANALYST, branchOwnsRoute=False)
    state.setRoute(NodeName.BULL_RESEARCHER)
    state._beginVisit(NodeName.BULL_RESEARCHER, branchOwnsRoute=True)
    state.setRoute(NodeName.BEAR_RESEARCHER)
    assert state.proposedRoute == "bear_researcher"
    assert state.currentNode == "bull_researcher"
    assert state.routeWrites == 0


def test_terminal_sentinel_is_a_node_name():
    assert NodeName.END.value == END
    assert str(NodeName.RISK_JUDGE) == "risk_judge"


def test_tool_call_arguments_fallback_to_raw():
    assert ToolCall("c1", "f", '{"symbol": "AAPL"}').parsedArguments() == {"symbol": "AAPL"}
    assert ToolCall("c2", "f", '{"symbol": ').parsedArguments() == {"_raw": '{"symbol": '}
    assert ToolCall("c3", "f", "").parsedArguments() == {}


def test_tool_message_dict_carries_call_id():
    msg = Message(role="tool", content="42", toolCallId="c1", toolName="get_price")
    assert msg.message == {"role": "tool", "content": "42", "tool_call_id": "c1", "name": "get_price"}


def test_explicit_proposal_wins_over_keywords():
    decision = extractTradingSignal(
        "Risks of decline and overvalued multiples. FINAL TRANSACTION PROPOSAL: **BUY**", "NVDA", "2024-05-10"
    )
    assert decision.action == "BUY"
    assert decision.confidence == 0.9


def test_keyword_scoring_picks_highest_signal():
    decision = extractTradingSignal("Bearish setup, we should sell and avoid the name.", "NVDA", "2024-05-10")
    assert decision.action == "SELL"
    assert 0.5 < decision.confidence <= 0.95


def test_no_signal_defaults_to_hold():
    decision = extractTradingSignal("", "NVDA", "2024-05-10")
    assert decision.action == "HOLD"
    assert decision.confidence == 0.5


def test_snapshot_is_json_shaped():
    state = _state()
    state.setReport(ReportPhase.NEWS, "quiet week")
    snapshot = state.snapshot()
    assert snapshot["company_of_interest"] == "NVDA"
    assert snapshot["news_report"] == "quiet week"
    assert snapshot["investment_debate_state"]["count"] == 0
    assert snapshot["risk_debate_state"]["latest_speaker"] == ""
    assert snapshot["goto"] is None
