from typing import Any, Dict, Optional


class TaskLoopError(Exception):
    """Base error for the task loop"""


class TaskAbortedError(TaskLoopError):
    """Raised by any suspension point once the task has been aborted"""

    def __init__(self, task_id: str, instance_id: str, where: str = "task"):
        super().__init__(f"[{where}] task {task_id}.{instance_id} aborted")
        self.task_id = task_id
        self.instance_id = instance_id


class AskIgnoredError(TaskLoopError):
    """A partial ask, or an ask superseded by a newer message"""


class UserDeclinedError(TaskLoopError):
    """The human declined to continue; fatal to the task"""


class UnexpectedStateError(TaskLoopError):
    """Persisted state violates an invariant the loop relies on"""


class SubtaskTimeoutError(TaskLoopError):
    """A parent task gave up waiting for its sub-task"""


class ApiRequestError(TaskLoopError):
    """Failure reported by the model transport"""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after_seconds: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        self.details = details or {}

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class TaskNotFoundError(TaskLoopError):
    """No live task or stored history matches the id"""
