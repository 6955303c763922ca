# ABOUTME: Best-effort notification bridge plus the in-memory monitoring snapshot it feeds.
# ABOUTME: notify() never blocks: events land in a bounded buffer and subscriber queues drop on overflow.

import asyncio
import itertools
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

import internal_configs as cfg

logger = logging.getLogger(__name__)

AGENT_TOPIC_PREFIX = "agent."


class MonitoringState:
    """In-memory view of the current trading workflow, derived from bridge events"""
    def __init__(self, max_tool_calls: int = 50):
        self.workflow_id: Optional[str] = None
        self.subject: Optional[str] = None
        self.trade_date: Optional[str] = None
        self.current_phase: str = "Idle"
        self.current_agent: Optional[str] = None
        self.agents: Dict[str, Dict[str, Any]] = {}
        self.tool_calls: deque = deque(maxlen=max_tool_calls)
        self.start_time: Optional[str] = None
        self.end_time: Optional[str] = None
        self.last_error: Optional[str] = None

    def reset(self, workflow_id: str, subject: str, trade_date: str):
        self.workflow_id = workflow_id
        self.subject = subject
        self.trade_date = trade_date
        self.current_phase = "Running"
        self.current_agent = None
        self.agents = {}
        self.tool_calls.clear()
        self.start_time = datetime.now().isoformat()
        self.end_time = None
        self.last_error = None

    def _agent(self, name: str) -> Dict[str, Any]:
        return self.agents.setdefault(name, {
            "name": name,
            "status": "idle",
            "turns": 0,
            "toolCallsCount": 0,
            "chars": 0,
        })

    def apply(self, event: str, payload: Dict[str, Any]):
        agent_name = payload.get("agent")
        if event == "run_start":
            self.reset(payload.get("session_id") or "", payload.get("subject") or "", payload.get("date") or "")
        elif event == "message_chunk" and agent_name:
            agent = self._agent(agent_name)
            if self.current_agent and self.current_agent != agent_name and self.current_agent in self.agents:
                self.agents[self.current_agent]["status"] = "completed"
            self.current_agent = agent_name
            agent["status"] = "active"
            agent["chars"] += len(payload.get("content") or "")
        elif event == "text_final" and agent_name:
            agent = self._agent(agent_name)
            agent["turns"] += 1
            agent["chars"] = max(agent["chars"], len(payload.get("content") or ""))
        elif event == "tool_call_result_final" and agent_name:
            self._agent(agent_name)["toolCallsCount"] += 1
            self.tool_calls.append({
                "id": payload.get("tool_call_id"),
                "toolName": payload.get("name"),
                "agentName": agent_name,
                "timestamp": datetime.now().isoformat(),
            })
        elif event == "finished":
            self.current_phase = "Complete"
            self.end_time = datetime.now().isoformat()
            for agent in self.agents.values():
                if agent["status"] == "active":
                    agent["status"] = "completed"
        elif event == "error":
            self.current_phase = "Error"
            self.last_error = payload.get("error")
            self.end_time = datetime.now().isoformat()
            if agent_name:
                self._agent(agent_name)["status"] = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "subject": self.subject,
            "tradeDate": self.trade_date,
            "currentPhase": self.current_phase,
            "currentAgent": self.current_agent,
            "agents": list(self.agents.values()),
            "toolCalls": list(self.tool_calls),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "lastError": self.last_error,
        }


class NotificationBridge:
    """
    Delivers (topic, payload) pairs to whoever is listening, at most once.
    Safe to call from several runs at once; nothing here waits on a consumer.
    """

    def __init__(self, maxEvents: int = 500, subscriberQueueSize: int = 1000):
        self._events: deque = deque(maxlen=maxEvents)
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()
        self._subscribers: List[asyncio.Queue] = []
        self.subscriberQueueSize = subscriberQueueSize
        self.dropped = 0
        self.monitor = MonitoringState()

    def notify(self, topic: str, payload: Dict[str, Any]) -> int:
        """Record and fan out one event. Returns its cursor."""
        with self._lock:
            cursor = next(self._sequence)
            record = {
                "cursor": cursor,
                "topic": topic,
                "payload": payload,
                "timestamp": datetime.now().isoformat(),
            }
            self._events.append(record)
            subscribers = list(self._subscribers)

        if topic.startswith(AGENT_TOPIC_PREFIX):
            self.monitor.apply(topic[len(AGENT_TOPIC_PREFIX):], payload)

        for queue in subscribers:
            try:
                queue.put_nowait(record)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug(f"Subscriber queue full, dropped event {cursor} ({topic})")
        return cursor

    def recentEvents(self, afterCursor: int = 0, limit: int = 100, topicPrefix: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            events = [e for e in self._events if e["cursor"] > afterCursor]
        if topicPrefix:
            events = [e for e in events if e["topic"].startswith(topicPrefix)]
        return events[:limit]

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.subscriberQueueSize)
        with self._lock:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def snapshot(self) -> Dict[str, Any]:
        return self.monitor.to_dict()


# Global bridge shared by the orchestrator and the API server
bridge = NotificationBridge(maxEvents=cfg.config.RECENT_EVENT_LIMIT)
