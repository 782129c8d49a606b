from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from typing import Any, Callable, Dict, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio
import structlog

from taskloop.application.websocket.connection_manager import ConnectionManager
from taskloop.application.websocket.schema.events import (
    AskResponseEvent, CancelTaskEvent, CondenseContextEvent, EventType, StartTaskEvent
)
from taskloop.config.settings import TaskSettings, get_settings
from taskloop.domain.approval.rate_limit import RequestRateLimiter
from taskloop.domain.orchestration.core.task_orchestrator import TaskOrchestrator
from taskloop.domain.streaming.streaming_handler import StreamingHandler
from taskloop.domain.transport.api_handler import ApiHandler
from taskloop.infrastructure.observability.logging import setup_logging
from taskloop.infrastructure.observability.telemetry import (
    LangfuseTelemetry, NullTelemetry, TelemetrySink
)
from taskloop.infrastructure.persistence.task_storage import (
    FileTaskStorage, InMemoryTaskStorage, TaskStorage
)

logger = structlog.get_logger(__name__)


def build_telemetry(settings: TaskSettings) -> TelemetrySink:
    if settings.langfuse_enabled():
        return LangfuseTelemetry(
            public_key=settings.langfuse_public_key,
            secret_key=settings.langfuse_secret_key,
            host=settings.langfuse_host
        )
    return NullTelemetry()


def build_storage(settings: TaskSettings) -> TaskStorage:
    if settings.storage_dir:
        return FileTaskStorage(settings.storage_dir)
    return InMemoryTaskStorage()


def create_app(
    api_handler_factory: Callable[[], ApiHandler],
    settings: Optional[TaskSettings] = None,
    storage: Optional[TaskStorage] = None,
    telemetry: Optional[TelemetrySink] = None,
) -> FastAPI:
    """WebSocket server driving one task stack per session"""

    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)

    storage = storage or build_storage(settings)
    telemetry = telemetry or build_telemetry(settings)
    # Shared by every session so all of them space requests off one clock
    rate_limiter = RequestRateLimiter()

    connection_manager = ConnectionManager()
    streaming_handler = StreamingHandler(connection_manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        health_task = asyncio.create_task(connection_manager.health_check())
        logger.info("WebSocket server started")
        yield
        health_task.cancel()
        for session_id in list(connection_manager.sessions):
            await connection_manager.close_session(session_id)
        if isinstance(telemetry, LangfuseTelemetry):
            telemetry.flush()
        logger.info("WebSocket server shutdown")

    app = FastAPI(title="Task Loop WebSocket Server", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def build_orchestrator(session_id: str) -> TaskOrchestrator:
        orchestrator = TaskOrchestrator(
            api_handler_factory(),
            settings=settings,
            storage=storage,
            telemetry=telemetry,
            rate_limiter=rate_limiter,
        )
        orchestrator.on_task_created(lambda task: streaming_handler.attach(session_id, task))
        return orchestrator

    @app.websocket("/ws/tasks/{session_id}")
    async def task_websocket(websocket: WebSocket, session_id: str):
        """Main WebSocket endpoint for task interaction"""

        orchestrator = build_orchestrator(session_id)
        await connection_manager.open_session(websocket, session_id, orchestrator)

        try:
            while True:
                data = await websocket.receive_json()
                try:
                    await handle_client_event(orchestrator, connection_manager, session_id, data)
                except Exception as e:
                    logger.error("Error processing message", error=str(e), session_id=session_id)
                    await connection_manager.send_error(
                        session_id,
                        f"Error processing message: {str(e)}"
                    )

        except WebSocketDisconnect:
            logger.info("Client disconnected", session_id=session_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), session_id=session_id)
        finally:
            await connection_manager.close_session(session_id, websocket)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_connections": len(connection_manager.sessions),
            "active_tasks": connection_manager.active_task_count(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


async def handle_client_event(
    orchestrator: TaskOrchestrator,
    connection_manager: ConnectionManager,
    session_id: str,
    data: Dict[str, Any],
) -> None:
    """Route one client event to the session's task stack"""

    event_type = data.get("type")

    if event_type == EventType.START_TASK:
        event = StartTaskEvent.model_validate(data)
        if event.history_task_id:
            item = await orchestrator.get_task_with_id(event.history_task_id)
            await orchestrator.init_task_with_history_item(item)
        else:
            await orchestrator.create_task(event.text or "", event.images)
        return

    task = orchestrator.get_current_task()

    if event_type == EventType.ASK_RESPONSE:
        event = AskResponseEvent.model_validate(data)
        if task is None:
            await connection_manager.send_error(session_id, "No active task", error_code="no_active_task")
            return
        task.handle_ask_response(event.response, event.text, event.images)

    elif event_type == EventType.CANCEL_TASK:
        CancelTaskEvent.model_validate(data)
        await orchestrator.cancel_task()

    elif event_type == EventType.CONDENSE_CONTEXT:
        CondenseContextEvent.model_validate(data)
        if task is None:
            await connection_manager.send_error(session_id, "No active task", error_code="no_active_task")
            return
        await task.condense_context()

    else:
        await connection_manager.send_error(session_id, f"Unknown event type: {event_type}", error_code="unknown_event")


def main() -> None:
    import uvicorn
    from taskloop.infrastructure.llm.langchain_handler import create_api_handler

    settings = get_settings()
    app = create_app(lambda: create_api_handler(settings), settings=settings)
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
