# ABOUTME: Centralized configurations for the multi-agent trading workflow.
# ABOUTME: Contains environment-backed settings, submission tool definitions, and prompt templates.

import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load environment variables early to ensure AppConfig picks them up
load_dotenv()


def _intEnv(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _floatEnv(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass
class AppConfig:
    """Core operational parameters and environment-backed configurations"""
    # API Credentials
    LLM_API_KEY: str = os.getenv("LLM_API_KEY", os.getenv("OPENROUTER_API_KEY", "")).strip()
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "").strip()

    # Model Selection
    PRIMARY_MODEL: str = os.getenv("MODEL_NAME", "z-ai/glm-4.5-air:free")
    DEEP_THINK_MODEL: str = os.getenv("DEEP_THINK_MODEL", os.getenv("MODEL_NAME", "z-ai/glm-4.5-air:free"))
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openrouter").lower()
    LOCAL_LLM_URL: str = os.getenv("LOCAL_LLM_URL", "http://host.docker.internal:12434").strip()

    # Workflow Ceilings
    MAX_DEBATE_ROUNDS: int = _intEnv("MAX_DEBATE_ROUNDS", 1)
    MAX_RISK_DISCUSS_ROUNDS: int = _intEnv("MAX_RISK_DISCUSS_ROUNDS", 1)
    MAX_RECUR_LIMIT: int = _intEnv("MAX_RECUR_LIMIT", 100)
    MAX_TOOL_CYCLES: int = _intEnv("MAX_TOOL_CYCLES", 15)
    RUN_TIMEOUT_SECONDS: float = _floatEnv("RUN_TIMEOUT_SECONDS", 0.0)  # 0 disables the deadline
    TOOL_FRAGMENT_POLICY: str = os.getenv("TOOL_FRAGMENT_POLICY", "single_open").strip().lower()

    # Operational Parameters
    RATE_LIMIT_BACKOFF_CAP: int = 5  # seconds
    SESSION_DB_PATH: str = os.getenv("SESSION_DB_PATH", "./output/sessions.db")
    RESULTS_DIR: str = os.getenv("RESULTS_DIR", "./results")
    RECENT_EVENT_LIMIT: int = 500

    # Docker & MCP Configuration
    FINANCE_TOOLS_IMAGE: str = os.getenv("FINANCE_TOOLS_IMAGE", "").strip()

    # Defaults
    DEFAULT_SYMBOL: str = "NVDA"
    FRAGMENT_POLICIES: list = field(default_factory=lambda: ["single_open", "latest", "drop"])

    def verifyConfiguration(self):
        """
        Strict validation of required environment variables.
        Ensures the system fails fast if the operational bedrock is missing.
        """
        missingVars = []
        if self.LLM_PROVIDER != "local" and not self.LLM_API_KEY:
            missingVars.append("LLM_API_KEY")
        if not self.PRIMARY_MODEL:
            missingVars.append("MODEL_NAME")

        if missingVars:
            errorReport = (
                "\n" + "!" * 50 + "\n"
                "CRITICAL ERROR: Environment Configuration Incomplete\n"
                f"Missing variables: {', '.join(missingVars)}\n"
                "Please check your .env file and ensure these are set.\n"
                "!" * 50 + "\n"
            )
            raise ValueError(errorReport)

        if self.TOOL_FRAGMENT_POLICY not in self.FRAGMENT_POLICIES:
            raise ValueError(f"TOOL_FRAGMENT_POLICY must be one of {self.FRAGMENT_POLICIES}")
        if self.MAX_DEBATE_ROUNDS < 1 or self.MAX_RISK_DISCUSS_ROUNDS < 1:
            raise ValueError("MAX_DEBATE_ROUNDS and MAX_RISK_DISCUSS_ROUNDS must be at least 1")

# Global config instance
config = AppConfig()


# --- Submission Tool Definitions ---
# A call to one of these ends the node's tool loop; the node reads its arguments in the route step.

def _submitTool(name: str, description: str, properties: dict, required: list) -> dict:
    return {
        name: {
            "name": name,
            "description": description,
            "inputSchema": {"type": "object", "properties": properties, "required": required},
        }
    }


_REPORT_PROPERTY = {"report": {"type": "string", "description": "Complete markdown report"}}
_ACTION_PROPERTY = {
    "action": {"type": "string", "enum": ["BUY", "SELL", "HOLD"], "description": "Recommended action"}
}

SUBMIT_MARKET_ANALYSIS = _submitTool(
    "submit_market_analysis",
    "Submit the finished technical market analysis (trend, momentum, volatility, key levels).",
    _REPORT_PROPERTY, ["report"],
)
SUBMIT_SOCIAL_ANALYSIS = _submitTool(
    "submit_social_analysis",
    "Submit the finished social media sentiment analysis.",
    _REPORT_PROPERTY, ["report"],
)
SUBMIT_NEWS_ANALYSIS = _submitTool(
    "submit_news_analysis",
    "Submit the finished news and macro analysis.",
    _REPORT_PROPERTY, ["report"],
)
SUBMIT_FUNDAMENTALS_ANALYSIS = _submitTool(
    "submit_fundamentals_analysis",
    "Submit the finished fundamentals analysis.",
    _REPORT_PROPERTY, ["report"],
)
SUBMIT_BULL_RESEARCH = _submitTool(
    "submit_bull_research",
    "Submit your bullish argument for this debate turn.",
    {"research": {"type": "string", "description": "Bullish arguments with supporting evidence"}},
    ["research"],
)
SUBMIT_BEAR_RESEARCH = _submitTool(
    "submit_bear_research",
    "Submit your bearish argument for this debate turn.",
    {"research": {"type": "string", "description": "Bearish arguments with supporting evidence"}},
    ["research"],
)
SUBMIT_RESEARCH_DECISION = _submitTool(
    "submit_research_decision",
    "Submit the debate verdict and the investment plan for the trader.",
    {
        "decision": {"type": "string", "description": "Which side prevailed and why"},
        "investment_plan": {"type": "string", "description": "Detailed investment plan"},
        **_ACTION_PROPERTY,
    },
    ["decision", "investment_plan"],
)
SUBMIT_TRADING_PLAN = _submitTool(
    "submit_trading_plan",
    "Submit the concrete trading plan (entry, sizing, stops, targets).",
    {"plan": {"type": "string", "description": "Trading plan"}, **_ACTION_PROPERTY},
    ["plan"],
)
SUBMIT_FINAL_DECISION = _submitTool(
    "submit_final_decision",
    "Submit the final risk-adjusted trade decision.",
    {"final_decision": {"type": "string", "description": "Final decision with rationale"}, **_ACTION_PROPERTY},
    ["final_decision"],
)

# --- Prompt Templates ---

ANALYST_CONTEXT_TEMPLATE = """
Company: {subject}
Trade Date: {date}
Request: {prompt}
"""

MARKET_ANALYST_PROMPT = """You are a market analyst focused on technical analysis of price action.
Use the available tools to examine trend, moving averages, momentum (RSI, MACD), volatility and volume.
{context}
When you complete your analysis, use the submit_market_analysis tool. Finish with a markdown table of key points."""

SOCIAL_ANALYST_PROMPT = """You are a social media and sentiment analyst.
Assess public sentiment, discussion volume and notable narratives about the company over the past week.
{context}
When you complete your analysis, use the submit_social_analysis tool."""

NEWS_ANALYST_PROMPT = """You are a news analyst covering company-specific news and the macro environment.
Identify events that matter for trading the instrument in the near term.
{context}
When you complete your analysis, use the submit_news_analysis tool."""

FUNDAMENTALS_ANALYST_PROMPT = """You are a fundamentals analyst.
Review financial statements, valuation, profitability, balance sheet health and insider activity.
{context}
When you complete your analysis, use the submit_fundamentals_analysis tool."""

REPORTS_TEMPLATE = """
Market Analysis:
{market}

Social Sentiment Analysis:
{sentiment}

News Analysis:
{news}

Fundamentals Analysis:
{fundamentals}
"""

RESEARCHER_PROMPT = """You are a {stance} investment researcher in a structured debate about {subject} on {date}.
{mission}
{reports}
Debate history so far:
{history}

Your opponent's last argument:
{opponent}

Lessons from prior decisions:
{priorDecisions}

When you complete your research, use the {submitTool} tool. Address your opponent directly and back claims with data."""

BULL_MISSION = "Build the strongest case for investing: growth drivers, competitive advantages, positive catalysts."
BEAR_MISSION = "Build the strongest case against investing: risks, weaknesses, negative indicators, overvaluation."

RESEARCH_MANAGER_PROMPT = """You are the research manager and debate facilitator for {subject} on {date}.
Critically evaluate the debate below and commit to BUY, SELL or HOLD. Do not default to HOLD without strong reasons.
{reports}
Debate transcript:
{history}

Lessons from prior decisions:
{priorDecisions}

When you complete your analysis, use the submit_research_decision tool to provide your verdict and a detailed investment plan."""

TRADER_PROMPT = """You are a trader turning an investment plan into a concrete trade for {subject} on {date}.
Investment plan from the research manager:
{investmentPlan}
{reports}
Lessons from prior decisions:
{priorDecisions}

When you complete your analysis, use the submit_trading_plan tool.
End with 'FINAL TRANSACTION PROPOSAL: **BUY/HOLD/SELL**'."""

RISK_ANALYST_PROMPT = """You are the {stance} risk analyst in a three-way risk discussion about the trader's plan for {subject}.
{mission}
Trader's plan:
{traderPlan}
{reports}
Discussion so far:
{history}

Latest arguments from the other analysts:
{others}

Respond conversationally in plain text, engaging the other analysts' points directly."""

RISKY_MISSION = "Champion high-reward opportunities and challenge overly cautious positions."
SAFE_MISSION = "Protect assets, minimize volatility and point out what the aggressive view overlooks."
NEUTRAL_MISSION = "Weigh both sides and argue for a balanced, moderate approach."

RISK_JUDGE_PROMPT = """You are the risk management judge for {subject} on {date}.
Evaluate the risk discussion and refine the trader's plan into a final decision: BUY, SELL or HOLD.
Trader's plan:
{traderPlan}

Risk discussion transcript:
{history}

Lessons from prior decisions:
{priorDecisions}

When you complete your evaluation, use the submit_final_decision tool.
Include 'FINAL TRANSACTION PROPOSAL: **BUY/HOLD/SELL**' in the decision text."""

# --- Output Templates ---

MARKDOWN_REPORT_TEMPLATE = """# Trading Analysis Report: {subject}

**Trade Date**: {date}
**Generated**: {timestamp}
**Decision**: {action} (confidence {confidence})

> Prompt: {prompt}

## Market Analysis
{market}

## Social Sentiment
{sentiment}

## News
{news}

## Fundamentals
{fundamentals}

## Investment Debate
{debateHistory}

### Research Manager Decision
{debateDecision}

### Investment Plan
{investmentPlan}

## Trader Plan
{traderPlan}

## Risk Discussion
{riskHistory}

## Final Trade Decision
{finalDecision}
"""
