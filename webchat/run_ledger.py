import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from webchat.agent_events import AgentEventTranslator
from webchat.broadcaster import EventBroadcaster, Subscription
from webchat.config import WebChatSettings
from webchat.errors import RunConflictError
from webchat.models import RunStatus
from webchat.persistence import SessionStore
from webchat.supervisor import ProcessSupervisor, WorkerHandle

logger = logging.getLogger(__name__)

ABORTED_ERROR = "Run aborted by user"
_ACTIVE_STATUSES = ("starting", "running")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Run:
    session_id: str
    broadcaster: EventBroadcaster
    status: RunStatus = "starting"
    message: str = ""
    agent_session_id: str = ""
    assistant_message_id: str = field(default_factory=lambda: f"assistant-{uuid.uuid4().hex}")
    worker: Optional[WorkerHandle] = None
    error: Optional[str] = None
    created_at_ms: int = field(default_factory=_now_ms)
    finished_at_ms: Optional[int] = None
    translator: Optional[AgentEventTranslator] = None

    def __post_init__(self) -> None:
        if self.translator is None:
            self.translator = AgentEventTranslator(self.assistant_message_id)

    @property
    def is_active(self) -> bool:
        return self.status in _ACTIVE_STATUSES

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "pid": self.worker.pid if self.worker is not None else None,
            "events": self.broadcaster.published_count,
            "subscribers": self.broadcaster.subscriber_count,
            "created_at_ms": self.created_at_ms,
            "finished_at_ms": self.finished_at_ms,
            "error": self.error,
        }


class RunLedger:
    """Registry of active and recently finished runs, keyed by session id.

    All mutation happens on the event loop. ``start_run`` checks for an
    active run and registers the new one without awaiting in between, which
    is what keeps "one active run per session" true under concurrent starts.
    Finished runs stay for ``grace_period_sec`` so a reconnecting client can
    replay the tail, then are evicted.
    """

    def __init__(
        self,
        settings: WebChatSettings,
        supervisor: ProcessSupervisor,
        store: Optional[SessionStore] = None,
    ) -> None:
        self._settings = settings
        self._supervisor = supervisor
        self._store = store
        self._runs: Dict[str, Run] = {}
        self._eviction_timers: Dict[str, asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()

    def has_active_run(self, session_id: str) -> bool:
        run = self._runs.get(session_id)
        return run is not None and run.is_active

    def get_active_run(self, session_id: str) -> Optional[Run]:
        return self._runs.get(session_id)

    def active_count(self) -> int:
        return sum(1 for run in self._runs.values() if run.is_active)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [run.summary() for run in self._runs.values()]

    async def start_run(
        self,
        session_id: str,
        message: str,
        agent_session_id: Optional[str] = None,
        user_message: Optional[Dict[str, Any]] = None,
    ) -> Run:
        """Register a run for ``session_id`` and launch its worker.

        ``user_message``, when given, is persisted only after the run is
        registered, so a request rejected with a conflict writes nothing.
        """
        previous = self._runs.get(session_id)
        if previous is not None and previous.is_active:
            raise RunConflictError(session_id)

        run = Run(
            session_id=session_id,
            broadcaster=EventBroadcaster(
                buffer_size=self._settings.replay_buffer_size,
                queue_size=self._settings.subscriber_queue_size,
            ),
            message=message,
            agent_session_id=agent_session_id or session_id,
        )
        self._cancel_eviction(session_id)
        self._runs[session_id] = run

        async def on_event(raw: Dict[str, Any]) -> None:
            await self._handle_worker_event(run, raw)

        async def on_exit(handle: WorkerHandle) -> None:
            await self._handle_worker_exit(run, handle)

        try:
            if user_message is not None and self._store is not None:
                await self._store.persist_user_message(session_id, user_message)
            if run.status != "starting":
                # Aborted while the user message was being written.
                return run
            handle = await self._supervisor.spawn(
                session_id,
                message,
                run.agent_session_id,
                on_event=on_event,
                on_exit=on_exit,
            )
        except BaseException:
            if self._runs.get(session_id) is run:
                del self._runs[session_id]
                if previous is not None:
                    self._runs[session_id] = previous
                    self._schedule_eviction(previous, self._remaining_grace(previous))
            run.broadcaster.complete()
            raise

        if run.status != "starting":
            # Aborted while the process was being created.
            self._spawn_background(self._supervisor.terminate(handle, graceful=True))
            return run
        run.worker = handle
        run.status = "running"
        logger.info("[runs] started session=%s pid=%s", session_id, handle.pid)
        return run

    def subscribe(self, session_id: str, *, replay: bool) -> Optional[Subscription]:
        run = self._runs.get(session_id)
        if run is None:
            return None
        return run.broadcaster.subscribe(replay=replay)

    async def abort_run(self, session_id: str) -> bool:
        run = self._runs.get(session_id)
        if run is None or not run.is_active:
            return False
        handle = run.worker
        logger.info("[runs] abort requested session=%s", session_id)
        await self._finish(run, "error", error=ABORTED_ERROR)
        if handle is not None:
            self._spawn_background(self._supervisor.terminate(handle, graceful=True))
        return True

    def evict(self, session_id: str) -> bool:
        run = self._runs.get(session_id)
        if run is None or run.is_active:
            return False
        return self._evict_run(run)

    async def shutdown(self) -> None:
        for timer in self._eviction_timers.values():
            timer.cancel()
        self._eviction_timers.clear()
        handles = []
        for run in list(self._runs.values()):
            if run.is_active and run.worker is not None:
                handles.append(run.worker)
        if handles:
            logger.info("[runs] shutdown terminating %d worker(s)", len(handles))
            await asyncio.gather(
                *(self._supervisor.terminate(h, graceful=True) for h in handles),
                return_exceptions=True,
            )
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _handle_worker_event(self, run: Run, raw: Dict[str, Any]) -> None:
        if not run.is_active:
            return
        before = run.translator.finalized_parts
        for event in run.translator.feed(raw):
            run.broadcaster.publish(event)
        if run.translator.finalized_parts > before:
            await self._persist_assistant(run)

    async def _handle_worker_exit(self, run: Run, handle: WorkerHandle) -> None:
        if not run.is_active:
            run.worker = None
            return
        code = handle.returncode
        if code == 0:
            await self._finish(run, "done")
            return
        reported = run.translator.error
        if reported:
            # The worker already explained itself; do not emit a second error.
            logger.warning("[runs] worker failed session=%s code=%s: %s", run.session_id, code, reported)
            await self._finish(run, "error", error=reported)
            return
        tail = handle.stderr_tail
        detail = tail[-1] if tail else ""
        error = f"Agent worker exited with code {code}"
        if detail:
            error = f"{error}: {detail}"
        logger.warning("[runs] worker crashed session=%s code=%s", run.session_id, code)
        await self._finish(run, "error", error=error)

    async def _finish(self, run: Run, status: RunStatus, error: Optional[str] = None) -> None:
        if not run.is_active:
            return
        run.status = status
        run.error = error
        run.finished_at_ms = _now_ms()
        run.worker = None
        for event in run.translator.finish(error=error):
            run.broadcaster.publish(event)
        # Flush before the sentinel so a client save issued after the stream
        # closes always lands last.
        await self._persist_assistant(run)
        run.broadcaster.complete()
        self._schedule_eviction(run)
        logger.info(
            "[runs] finished session=%s status=%s events=%d",
            run.session_id,
            status,
            run.broadcaster.published_count,
        )

    async def _persist_assistant(self, run: Run) -> None:
        if self._store is None or not run.translator.has_output:
            return
        await self._store.persist_message(run.session_id, run.translator.message())

    def _schedule_eviction(self, run: Run, delay: Optional[float] = None) -> None:
        self._cancel_eviction(run.session_id)
        loop = asyncio.get_running_loop()
        self._eviction_timers[run.session_id] = loop.call_later(
            self._settings.grace_period_sec if delay is None else delay,
            self._evict_run,
            run,
        )

    def _remaining_grace(self, run: Run) -> float:
        if run.finished_at_ms is None:
            return self._settings.grace_period_sec
        elapsed = (_now_ms() - run.finished_at_ms) / 1000.0
        return max(0.0, self._settings.grace_period_sec - elapsed)

    def _cancel_eviction(self, session_id: str) -> None:
        timer = self._eviction_timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    def _evict_run(self, run: Run) -> bool:
        if self._runs.get(run.session_id) is not run:
            return False
        del self._runs[run.session_id]
        timer = self._eviction_timers.pop(run.session_id, None)
        if timer is not None:
            timer.cancel()
        run.broadcaster.complete()
        logger.debug("[runs] evicted session=%s", run.session_id)
        return True

    def _spawn_background(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
