"""Domain exceptions for active chat runs."""

__all__ = [
    "RunConflictError",
    "WorkerSpawnError",
]


class RunConflictError(RuntimeError):
    """Raised when a session already has a starting or running run."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Active run in progress for session {session_id}")
        self.session_id = session_id


class WorkerSpawnError(RuntimeError):
    """Raised when the agent worker process cannot be launched."""
