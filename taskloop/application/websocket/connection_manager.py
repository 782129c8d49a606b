from typing import Dict, List, Optional, TYPE_CHECKING
from datetime import datetime, timezone
from fastapi import WebSocket
import asyncio
import structlog

from taskloop.application.websocket.schema.events import BaseEvent, ConnectionEvent, ErrorEvent

if TYPE_CHECKING:
    from taskloop.domain.orchestration.core.task_orchestrator import TaskOrchestrator

logger = structlog.get_logger(__name__)

STALE_SESSION_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session:
    """One client connection and the task stack it drives"""

    def __init__(self, session_id: str, websocket: WebSocket, orchestrator: "TaskOrchestrator"):
        self.session_id = session_id
        self.websocket = websocket
        self.orchestrator = orchestrator
        self.connected_at = _utcnow()
        self.last_activity = self.connected_at
        self.task_ids: List[str] = []


class ConnectionManager:
    """Sessions, their orchestrators, and routing of task events to the owning session.

    Every task created by a session's orchestrator is bound to that session,
    so events are delivered by task id. A task id belongs to at most one
    session; a later binding (a task resumed from another connection) wins.
    """

    def __init__(self):
        self.sessions: Dict[str, Session] = {}
        self.task_sessions: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def open_session(self, websocket: WebSocket, session_id: str, orchestrator: "TaskOrchestrator") -> Session:
        await websocket.accept()

        async with self._lock:
            previous = self.sessions.get(session_id)
            session = Session(session_id=session_id, websocket=websocket, orchestrator=orchestrator)
            self.sessions[session_id] = session

        if previous is not None:
            logger.warning("Session reconnected, replacing previous connection", session_id=session_id)
            await self._release(previous)

        await self.send_event(session_id, ConnectionEvent(status="connected", session_id=session_id))
        logger.info("WebSocket connected", session_id=session_id)
        return session

    async def close_session(self, session_id: str, websocket: Optional[WebSocket] = None) -> None:
        """Abandon the session's tasks and close its socket.

        With `websocket` given, only that connection is closed; a session that
        has since reconnected on a new socket is left alone.
        """

        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None or (websocket is not None and session.websocket is not websocket):
                return
            del self.sessions[session_id]

        await self._release(session)
        logger.info("WebSocket disconnected", session_id=session_id, tasks=len(session.task_ids))

    async def _release(self, session: Session) -> None:
        for task_id in session.task_ids:
            if self.task_sessions.get(task_id) == session.session_id:
                del self.task_sessions[task_id]

        while session.orchestrator.task_stack:
            await session.orchestrator.clear_task()

        try:
            await session.websocket.close()
        except Exception as e:
            logger.debug("Socket already closed", session_id=session.session_id, error=str(e))

    def bind_task(self, session_id: str, task_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning("Binding task to unknown session", session_id=session_id, task_id=task_id)
            return
        if task_id not in session.task_ids:
            session.task_ids.append(task_id)
        self.task_sessions[task_id] = session_id

    def session_for_task(self, task_id: str) -> Optional[str]:
        return self.task_sessions.get(task_id)

    def orchestrator_for(self, session_id: str) -> Optional["TaskOrchestrator"]:
        session = self.sessions.get(session_id)
        return session.orchestrator if session else None

    def active_task_count(self) -> int:
        return sum(len(s.orchestrator.task_stack) for s in self.sessions.values())

    async def send_to_task(self, task_id: str, event: BaseEvent) -> bool:
        """Deliver a task's event to whichever session owns the task"""

        session_id = self.task_sessions.get(task_id)
        if session_id is None:
            logger.debug("Dropping event for unbound task", task_id=task_id, type=event.type)
            return False
        return await self.send_event(session_id, event)

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning("Attempted to send to disconnected session", session_id=session_id)
            return False

        if event.session_id is None:
            event.session_id = session_id

        try:
            await session.websocket.send_json(event.model_dump(mode="json"))
        except Exception as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.close_session(session_id, session.websocket)
            return False

        session.last_activity = _utcnow()
        return True

    async def send_error(self, session_id: str, error_message: str, error_code: Optional[str] = None):
        await self.send_event(
            session_id,
            ErrorEvent(payload={"message": error_message}, error_code=error_code, session_id=session_id)
        )

    def stale_sessions(self, now: Optional[datetime] = None) -> List[str]:
        now = now or _utcnow()
        return [
            session_id
            for session_id, session in self.sessions.items()
            if (now - session.last_activity).total_seconds() > STALE_SESSION_SECONDS
        ]

    async def health_check(self):
        """Periodically close sessions that have gone quiet"""
        while True:
            try:
                for session_id in self.stale_sessions():
                    logger.warning("Disconnecting stale session", session_id=session_id)
                    await self.close_session(session_id)
            except Exception as e:
                logger.error("Health check error", error=str(e))

            await asyncio.sleep(60)
