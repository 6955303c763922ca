# ABOUTME: Conditional branch functions for the bounded debate and risk loops.
# ABOUTME: Pure reads of workflow state, evaluated fresh on every visit.

from typing import Tuple

from workflow_state import NodeName, RiskStance, RISK_ROTATION, WorkflowState

_STANCE_NODES = {
    RiskStance.RISKY: NodeName.RISKY_ANALYST,
    RiskStance.SAFE: NodeName.SAFE_ANALYST,
    RiskStance.NEUTRAL: NodeName.NEUTRAL_ANALYST,
}

DEBATE_TARGETS: Tuple[NodeName, ...] = (
    NodeName.BULL_RESEARCHER,
    NodeName.BEAR_RESEARCHER,
    NodeName.RESEARCH_MANAGER,
)

RISK_TARGETS: Tuple[NodeName, ...] = (
    NodeName.RISKY_ANALYST,
    NodeName.SAFE_ANALYST,
    NodeName.NEUTRAL_ANALYST,
    NodeName.RISK_JUDGE,
)


def debateBranch(state: WorkflowState) -> NodeName:
    """
    Manager once 2 * rounds turns are in, otherwise strict parity alternation.
    Reads the counter only, never the last speaker.
    """
    debate = state.debate
    if debate.count >= debate.turnCeiling:
        return NodeName.RESEARCH_MANAGER
    if debate.count % 2 == 0:
        return NodeName.BULL_RESEARCHER
    return NodeName.BEAR_RESEARCHER


def nextRiskStance(latest) -> RiskStance:
    """Successor in the fixed risky -> safe -> neutral rotation. Unset starts at risky."""
    if latest is None:
        return RISK_ROTATION[0]
    index = RISK_ROTATION.index(RiskStance(latest))
    return RISK_ROTATION[(index + 1) % len(RISK_ROTATION)]


def riskBranch(state: WorkflowState) -> NodeName:
    risk = state.risk
    if risk.count >= risk.turnCeiling:
        return NodeName.RISK_JUDGE
    return _STANCE_NODES[nextRiskStance(risk.latestSpeaker)]
