# ABOUTME: The twelve trading workflow nodes (analysts, researchers, manager, trader, risk panel, judge).
# ABOUTME: buildTradingPlan wires them into the compiled graph with the debate and risk branches.

import logging
from typing import Dict, List, Optional, Sequence

import internal_configs as cfg
from agent_engine import AgentNode
from branch_router import DEBATE_TARGETS, RISK_TARGETS, debateBranch, nextRiskStance, riskBranch
from graph_engine import CompiledPlan, GraphBuilder
from llm_client import ILlmClient
from workflow_state import (
    END,
    DebateSide,
    Message,
    NodeName,
    ReportPhase,
    RiskStance,
    TradingDecision,
    WorkflowPhase,
    WorkflowState,
    extractTradingSignal,
)

logger = logging.getLogger(__name__)

_STANCE_NODES = {
    RiskStance.RISKY: NodeName.RISKY_ANALYST,
    RiskStance.SAFE: NodeName.SAFE_ANALYST,
    RiskStance.NEUTRAL: NodeName.NEUTRAL_ANALYST,
}


def formatReports(state: WorkflowState) -> str:
    return cfg.REPORTS_TEMPLATE.format(
        market=state.report(ReportPhase.MARKET) or "N/A",
        sentiment=state.report(ReportPhase.SENTIMENT) or "N/A",
        news=state.report(ReportPhase.NEWS) or "N/A",
        fundamentals=state.report(ReportPhase.FUNDAMENTALS) or "N/A",
    )


def formatPriorDecisions(decisions: Sequence[TradingDecision]) -> str:
    if not decisions:
        return "None recorded."
    return "\n".join(
        f"- {d.date} {d.symbol}: {d.action} (confidence {d.confidence:.2f}) {d.reasoning[:160]}"
        for d in decisions
    )


# --- Analysts ---

class AnalystNode(AgentNode):
    """Produces one phase report, then hands off along the fixed analyst chain."""

    reportPhase: ReportPhase
    promptTemplate: str
    nextNode: NodeName
    closesAnalysis = False

    def prepare(self, state: WorkflowState) -> List[Message]:
        context = cfg.ANALYST_CONTEXT_TEMPLATE.format(
            subject=state.subjectId, date=state.asOfDate, prompt=state.prompt
        )
        return [
            Message.system(self.promptTemplate.format(context=context)),
            Message.user(f"Analyze {state.subjectId} for trading on {state.asOfDate}."),
        ]

    def route(self, state: WorkflowState, finalMessage: Message):
        report = self.submittedText(finalMessage, "report")
        if not report:
            logger.warning(f"{self.name}: empty {self.reportPhase.value} report")
        state.setReport(self.reportPhase, report)
        if not finalMessage.isEmpty:
            state.appendMessage(finalMessage)
        if self.closesAnalysis:
            state.markPhaseComplete(WorkflowPhase.ANALYSIS)
        state.setRoute(self.nextNode)


class MarketAnalyst(AnalystNode):
    submitTool = cfg.SUBMIT_MARKET_ANALYSIS
    reportPhase = ReportPhase.MARKET
    promptTemplate = cfg.MARKET_ANALYST_PROMPT
    nextNode = NodeName.SOCIAL_MEDIA_ANALYST


class SocialMediaAnalyst(AnalystNode):
    submitTool = cfg.SUBMIT_SOCIAL_ANALYSIS
    reportPhase = ReportPhase.SENTIMENT
    promptTemplate = cfg.SOCIAL_ANALYST_PROMPT
    nextNode = NodeName.NEWS_ANALYST


class NewsAnalyst(AnalystNode):
    submitTool = cfg.SUBMIT_NEWS_ANALYSIS
    reportPhase = ReportPhase.NEWS
    promptTemplate = cfg.NEWS_ANALYST_PROMPT
    nextNode = NodeName.FUNDAMENTALS_ANALYST


class FundamentalsAnalyst(AnalystNode):
    submitTool = cfg.SUBMIT_FUNDAMENTALS_ANALYSIS
    reportPhase = ReportPhase.FUNDAMENTALS
    promptTemplate = cfg.FUNDAMENTALS_ANALYST_PROMPT
    nextNode = NodeName.BULL_RESEARCHER
    closesAnalysis = True


# --- Investment debate ---

class ResearcherNode(AgentNode):
    """One side of the bull/bear debate. The debate branch decides who speaks next."""

    side: DebateSide
    mission: str
    opponent: NodeName

    def prepare(self, state: WorkflowState) -> List[Message]:
        debate = state.debate
        opponentSide = DebateSide.BEAR if self.side == DebateSide.BULL else DebateSide.BULL
        systemPrompt = cfg.RESEARCHER_PROMPT.format(
            stance=self.side.value.lower() + "ish",
            subject=state.subjectId,
            date=state.asOfDate,
            mission=self.mission,
            reports=formatReports(state),
            history=debate.history or "No arguments yet.",
            opponent=debate.sideHistory[opponentSide].splitlines()[-1] if debate.sideHistory[opponentSide] else "None yet.",
            priorDecisions=formatPriorDecisions(state.priorDecisions),
            submitTool=self.submitToolName,
        )
        userMessage = f"Present your {self.side.value.lower()}ish case for {state.subjectId}"
        if debate.count:
            userMessage += f". Address the {opponentSide.value.lower()} researcher's latest points"
        return [Message.system(systemPrompt), Message.user(userMessage + ".")]

    def route(self, state: WorkflowState, finalMessage: Message):
        argument = self.submittedText(finalMessage, "research") or "(no argument presented)"
        state.recordDebateTurn(self.side, argument)
        if not finalMessage.isEmpty:
            state.appendMessage(finalMessage)
        # Natural handoff; the wrapping debate branch owns the final word
        state.setRoute(self.opponent)


class BullResearcher(ResearcherNode):
    submitTool = cfg.SUBMIT_BULL_RESEARCH
    side = DebateSide.BULL
    mission = cfg.BULL_MISSION
    opponent = NodeName.BEAR_RESEARCHER


class BearResearcher(ResearcherNode):
    submitTool = cfg.SUBMIT_BEAR_RESEARCH
    side = DebateSide.BEAR
    mission = cfg.BEAR_MISSION
    opponent = NodeName.BULL_RESEARCHER


class ResearchManager(AgentNode):
    submitTool = cfg.SUBMIT_RESEARCH_DECISION

    def prepare(self, state: WorkflowState) -> List[Message]:
        systemPrompt = cfg.RESEARCH_MANAGER_PROMPT.format(
            subject=state.subjectId,
            date=state.asOfDate,
            reports=formatReports(state),
            history=state.debate.history or "No debate took place.",
            priorDecisions=formatPriorDecisions(state.priorDecisions),
        )
        return [Message.system(systemPrompt), Message.user(f"Judge the debate on {state.subjectId}.")]

    def route(self, state: WorkflowState, finalMessage: Message):
        submitted = self.submission(finalMessage)
        decision = self.submittedText(finalMessage, "decision")
        plan = submitted.get("investment_plan") or decision
        state.setDebateDecision(decision)
        state.setInvestmentPlan(plan)
        if not finalMessage.isEmpty:
            state.appendMessage(finalMessage)
        state.markPhaseComplete(WorkflowPhase.DEBATE)
        state.setRoute(NodeName.TRADER)


class Trader(AgentNode):
    submitTool = cfg.SUBMIT_TRADING_PLAN

    def prepare(self, state: WorkflowState) -> List[Message]:
        systemPrompt = cfg.TRADER_PROMPT.format(
            subject=state.subjectId,
            date=state.asOfDate,
            investmentPlan=state.investmentPlan or "N/A",
            reports=formatReports(state),
            priorDecisions=formatPriorDecisions(state.priorDecisions),
        )
        return [
            Message.system(systemPrompt),
            Message.user(f"Propose a trading plan for {state.subjectId} based on the investment plan."),
        ]

    def route(self, state: WorkflowState, finalMessage: Message):
        state.setTraderPlan(self.submittedText(finalMessage, "plan"))
        if not finalMessage.isEmpty:
            state.appendMessage(finalMessage)
        state.markPhaseComplete(WorkflowPhase.TRADING)
        state.setRoute(NodeName.RISKY_ANALYST)


# --- Risk discussion ---

class RiskAnalystNode(AgentNode):
    """One stance in the risk rotation. Answers in plain text, no tools."""

    stance: RiskStance
    mission: str

    def prepare(self, state: WorkflowState) -> List[Message]:
        risk = state.risk
        others = "\n".join(
            risk.currentResponses[stance] for stance in RiskStance
            if stance != self.stance and risk.currentResponses[stance]
        )
        systemPrompt = cfg.RISK_ANALYST_PROMPT.format(
            stance=self.stance.value.lower(),
            subject=state.subjectId,
            mission=self.mission,
            traderPlan=state.traderPlan or "N/A",
            reports=formatReports(state),
            history=risk.history or "No discussion yet.",
            others=others or "None yet.",
        )
        return [Message.system(systemPrompt), Message.user("Share your risk assessment of the trader's plan.")]

    def route(self, state: WorkflowState, finalMessage: Message):
        argument = finalMessage.content.strip() or "(no comment)"
        state.recordRiskTurn(self.stance, argument)
        if not finalMessage.isEmpty:
            state.appendMessage(finalMessage)
        state.setRoute(_STANCE_NODES[nextRiskStance(self.stance)])


class RiskyAnalyst(RiskAnalystNode):
    stance = RiskStance.RISKY
    mission = cfg.RISKY_MISSION


class SafeAnalyst(RiskAnalystNode):
    stance = RiskStance.SAFE
    mission = cfg.SAFE_MISSION


class NeutralAnalyst(RiskAnalystNode):
    stance = RiskStance.NEUTRAL
    mission = cfg.NEUTRAL_MISSION


class RiskJudge(AgentNode):
    submitTool = cfg.SUBMIT_FINAL_DECISION

    def prepare(self, state: WorkflowState) -> List[Message]:
        systemPrompt = cfg.RISK_JUDGE_PROMPT.format(
            subject=state.subjectId,
            date=state.asOfDate,
            traderPlan=state.traderPlan or "N/A",
            history=state.risk.history or "No discussion took place.",
            priorDecisions=formatPriorDecisions(state.priorDecisions),
        )
        return [Message.system(systemPrompt), Message.user(f"Deliver the final trade decision for {state.subjectId}.")]

    def route(self, state: WorkflowState, finalMessage: Message):
        finalText = self.submittedText(finalMessage, "final_decision")
        decision = extractTradingSignal(finalText, state.subjectId, state.asOfDate)
        action = str(self.submission(finalMessage).get("action", "")).upper()
        if action in ("BUY", "SELL", "HOLD") and action != decision.action:
            decision.action = action
            decision.confidence = max(decision.confidence, 0.7)
        state.setFinalDecision(finalText, decision)
        if not finalMessage.isEmpty:
            state.appendMessage(finalMessage)
        state.markPhaseComplete(WorkflowPhase.RISK)
        state.markWorkflowComplete()
        logger.info(f"{self.name}: final decision {decision.action} ({decision.confidence:.2f})")
        state.setRoute(END)


def buildTradingPlan(
    llmClient: ILlmClient,
    model: Optional[str] = None,
    deepModel: Optional[str] = None,
    toolProviders: Optional[Dict[str, Sequence]] = None,
    maxToolCycles: int = cfg.config.MAX_TOOL_CYCLES,
    fragmentPolicy: str = cfg.config.TOOL_FRAGMENT_POLICY,
) -> CompiledPlan:
    """
    Register the twelve nodes and compile the trading graph.
    toolProviders maps a node name to the providers that node may call.
    """
    quick = model or cfg.config.PRIMARY_MODEL
    deep = deepModel or cfg.config.DEEP_THINK_MODEL
    toolProviders = toolProviders or {}

    def make(nodeClass, name: NodeName, nodeModel: str) -> AgentNode:
        return nodeClass(
            name,
            llmClient,
            model=nodeModel,
            toolProviders=toolProviders.get(str(name), ()),
            maxToolCycles=maxToolCycles,
            fragmentPolicy=fragmentPolicy,
        )

    builder = GraphBuilder()
    builder.addNode(NodeName.MARKET_ANALYST, make(MarketAnalyst, NodeName.MARKET_ANALYST, quick))
    builder.addNode(NodeName.SOCIAL_MEDIA_ANALYST, make(SocialMediaAnalyst, NodeName.SOCIAL_MEDIA_ANALYST, quick))
    builder.addNode(NodeName.NEWS_ANALYST, make(NewsAnalyst, NodeName.NEWS_ANALYST, quick))
    builder.addNode(NodeName.FUNDAMENTALS_ANALYST, make(FundamentalsAnalyst, NodeName.FUNDAMENTALS_ANALYST, quick))
    builder.addNode(NodeName.BULL_RESEARCHER, make(BullResearcher, NodeName.BULL_RESEARCHER, quick))
    builder.addNode(NodeName.BEAR_RESEARCHER, make(BearResearcher, NodeName.BEAR_RESEARCHER, quick))
    builder.addNode(NodeName.RESEARCH_MANAGER, make(ResearchManager, NodeName.RESEARCH_MANAGER, deep))
    builder.addNode(NodeName.TRADER, make(Trader, NodeName.TRADER, quick))
    builder.addNode(NodeName.RISKY_ANALYST, make(RiskyAnalyst, NodeName.RISKY_ANALYST, quick))
    builder.addNode(NodeName.SAFE_ANALYST, make(SafeAnalyst, NodeName.SAFE_ANALYST, quick))
    builder.addNode(NodeName.NEUTRAL_ANALYST, make(NeutralAnalyst, NodeName.NEUTRAL_ANALYST, quick))
    builder.addNode(NodeName.RISK_JUDGE, make(RiskJudge, NodeName.RISK_JUDGE, deep))

    builder.addEdge(NodeName.MARKET_ANALYST, NodeName.SOCIAL_MEDIA_ANALYST)
    builder.addEdge(NodeName.SOCIAL_MEDIA_ANALYST, NodeName.NEWS_ANALYST)
    builder.addEdge(NodeName.NEWS_ANALYST, NodeName.FUNDAMENTALS_ANALYST)
    builder.addEdge(NodeName.FUNDAMENTALS_ANALYST, NodeName.BULL_RESEARCHER)
    builder.addBranch(NodeName.BULL_RESEARCHER, debateBranch, DEBATE_TARGETS)
    builder.addBranch(NodeName.BEAR_RESEARCHER, debateBranch, DEBATE_TARGETS)
    builder.addEdge(NodeName.RESEARCH_MANAGER, NodeName.TRADER)
    builder.addEdge(NodeName.TRADER, NodeName.RISKY_ANALYST)
    builder.addBranch(NodeName.RISKY_ANALYST, riskBranch, RISK_TARGETS)
    builder.addBranch(NodeName.SAFE_ANALYST, riskBranch, RISK_TARGETS)
    builder.addBranch(NodeName.NEUTRAL_ANALYST, riskBranch, RISK_TARGETS)
    builder.addEdge(NodeName.RISK_JUDGE, END)

    return builder.compile(NodeName.MARKET_ANALYST)
