from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from pathlib import Path
from typing import Optional
import asyncio
import functools
import logging

import anyio

import internal_configs as cfg
from notification_bridge import bridge

# ABOUTME: FastAPI server for starting trading analyses and polling their progress.
# ABOUTME: Bridges the Python workflow runtime with a dashboard frontend.

logger = logging.getLogger(__name__)

app = FastAPI(title="Trading Workflow API")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], # In production, restrict to frontend URL
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator = None
_runningTasks = set()


class AnalysisRequest(BaseModel):
    symbol: str
    date: Optional[str] = None
    prompt: Optional[str] = None


def getOrchestrator():
    """Lazily build the shared orchestrator so importing the app never needs credentials."""
    global _orchestrator
    if _orchestrator is None:
        from multi_agent_trading import TradingOrchestrator
        _orchestrator = TradingOrchestrator(bridge=bridge)
    return _orchestrator


def setOrchestrator(orchestrator):
    global _orchestrator
    _orchestrator = orchestrator


@app.get("/api/status")
async def _getStatus():
    """Polling endpoint for the frontend to get current workflow state"""
    return bridge.snapshot()


@app.get("/api/events")
async def _getEvents(after: int = 0, limit: int = 100, topic: Optional[str] = None):
    """Recent bridge events after a cursor, oldest first."""
    return bridge.recentEvents(afterCursor=after, limit=limit, topicPrefix=topic)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.post("/api/analysis")
async def _startAnalysis(request: AnalysisRequest):
    """Start a trading analysis in the background and return its session id once it exists."""
    orchestrator = getOrchestrator()
    sessionReady = asyncio.get_running_loop().create_future()

    async def _runAnalysis():
        try:
            await orchestrator.executeTradingSession(
                request.symbol, request.date, request.prompt, sessionReady=sessionReady
            )
        except Exception as e:
            logger.error(f"Analysis failed: {e}")
            if not sessionReady.done():
                sessionReady.set_exception(e)

    task = asyncio.create_task(_runAnalysis())
    _runningTasks.add(task)
    task.add_done_callback(_runningTasks.discard)

    try:
        sessionId = await sessionReady
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"message": "Analysis started", "sessionId": sessionId}


@app.post("/api/analysis/{sessionId}/cancel")
async def _cancelAnalysis(sessionId: str):
    if not getOrchestrator().cancel(sessionId):
        raise HTTPException(status_code=404, detail="No active run for this session")
    return {"message": "Cancellation requested", "sessionId": sessionId}


async def _offload(func, *args, **kwargs):
    """Run a blocking store call on a worker thread."""
    return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))


@app.get("/api/sessions")
async def _listSessions(limit: int = 20, offset: int = 0):
    store = getOrchestrator().store
    return await _offload(store.listSessions, limit=limit, offset=offset)


@app.get("/api/sessions/{sessionId}")
async def _getSession(sessionId: str):
    session = await _offload(getOrchestrator().store.getSession, sessionId)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.get("/api/sessions/{sessionId}/messages")
async def _getSessionMessages(sessionId: str):
    store = getOrchestrator().store
    if await _offload(store.getSession, sessionId) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return await _offload(store.listMessages, sessionId)


def _resultsDir() -> Path:
    return Path(cfg.config.RESULTS_DIR)


@app.get("/api/reports")
async def _listReports():
    """Returns every exported trading report, newest first."""
    resultsDir = _resultsDir()
    if not resultsDir.exists():
        return []

    files = sorted(
        resultsDir.glob("*/*/trading_report_*.md"),
        key=lambda f: f.stat().st_mtime,
        reverse=True
    )
    return [
        {
            "filename": f.name,
            "symbol": f.parent.parent.name,
            "date": f.parent.name,
            "size": f.stat().st_size,
            "modified": f.stat().st_mtime
        }
        for f in files
    ]


@app.get("/api/reports/{symbol}/{date}/{filename}")
async def _getReport(symbol: str, date: str, filename: str):
    """Returns the content of a specific trading report."""
    resultsDir = _resultsDir().resolve()
    filepath = (resultsDir / symbol / date / filename).resolve()

    if resultsDir not in filepath.parents or not filepath.exists() or filepath.suffix != ".md":
        raise HTTPException(status_code=404, detail="Report not found")

    try:
        content = filepath.read_text(encoding="utf-8")
        return {"filename": filename, "content": content}
    except OSError as e:
        raise HTTPException(status_code=500, detail=str(e))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
