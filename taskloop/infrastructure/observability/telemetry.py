from typing import Any, Dict, Optional, Protocol
import structlog
from langfuse import Langfuse

from taskloop.domain.models.messages import UIMessage

logger = structlog.get_logger(__name__)


class TelemetrySink(Protocol):
    """Fire-and-forget usage reporting"""

    def capture_message(self, task_id: str, message: UIMessage) -> None: ...

    def capture_llm_completion(self, task_id: str, usage: Dict[str, Any]) -> None: ...

    def capture_event(self, name: str, task_id: str, properties: Optional[Dict[str, Any]] = None) -> None: ...


class NullTelemetry:
    """Discards everything"""

    def capture_message(self, task_id: str, message: UIMessage) -> None:
        pass

    def capture_llm_completion(self, task_id: str, usage: Dict[str, Any]) -> None:
        pass

    def capture_event(self, name: str, task_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
        pass


class LangfuseTelemetry:
    """Reports task activity as Langfuse events"""

    def __init__(self, public_key: str, secret_key: str, host: Optional[str] = None):
        self.langfuse = Langfuse(
            public_key=public_key,
            secret_key=secret_key,
            host=host
        )

    def capture_message(self, task_id: str, message: UIMessage) -> None:
        self.langfuse.create_event(
            name=f"{message.type}:{message.kind}",
            input=message.text,
            metadata={"task_id": task_id, "ts": message.ts}
        )

    def capture_llm_completion(self, task_id: str, usage: Dict[str, Any]) -> None:
        self.langfuse.create_event(
            name="llm_completion",
            metadata={"task_id": task_id, **usage}
        )

    def capture_event(self, name: str, task_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
        self.langfuse.create_event(
            name=name,
            metadata={"task_id": task_id, **(properties or {})}
        )

    def flush(self) -> None:
        try:
            self.langfuse.flush()
        except Exception as e:
            logger.error("Failed to flush telemetry", error=str(e))
