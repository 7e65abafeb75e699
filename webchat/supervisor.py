"""Spawn and supervise agent worker processes.

The worker's lifetime belongs to the run, not to any HTTP request: its pump
task is created on the event loop and only ``terminate`` stops the process.
"""

import asyncio
import json
import logging
import os
import signal
from collections import deque
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional

from webchat.config import WebChatSettings
from webchat.errors import WorkerSpawnError

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_STDERR_TAIL_LINES = 20

EventCallback = Callable[[Dict[str, Any]], Awaitable[None]]
ExitCallback = Callable[["WorkerHandle"], Awaitable[None]]


class WorkerHandle:
    def __init__(self, session_id: str, process: asyncio.subprocess.Process) -> None:
        self.session_id = session_id
        self.process = process
        self.pump_task: Optional[asyncio.Task] = None
        self.terminate_requested = False
        self._stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)


async def _iter_lines(pipe: asyncio.StreamReader) -> AsyncIterator[str]:
    buffer = bytearray()
    while True:
        chunk = await pipe.read(_READ_CHUNK)
        if not chunk:
            break
        buffer.extend(chunk)
        while True:
            newline_index = buffer.find(b"\n")
            if newline_index < 0:
                break
            raw_line = bytes(buffer[:newline_index])
            del buffer[: newline_index + 1]
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
            if line:
                yield line
    if buffer:
        line = buffer.decode("utf-8", errors="replace").rstrip("\r\n")
        if line:
            yield line


class ProcessSupervisor:
    def __init__(self, settings: WebChatSettings) -> None:
        self._command = list(settings.worker_command)
        self._model = settings.model
        self._terminate_timeout_sec = settings.terminate_timeout_sec

    def build_command(self, message: str, agent_session_id: str) -> List[str]:
        return [*self._command, "--message", message, "--session-id", agent_session_id]

    async def spawn(
        self,
        session_id: str,
        message: str,
        agent_session_id: str,
        *,
        on_event: EventCallback,
        on_exit: ExitCallback,
    ) -> WorkerHandle:
        env = dict(os.environ)
        env["WEBCHAT_SESSION_ID"] = session_id
        env.setdefault("OPENAI_MODEL", self._model)
        command = self.build_command(message, agent_session_id)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except (OSError, ValueError) as exc:
            logger.error("[worker] spawn failed for session %s: %s", session_id, exc)
            raise WorkerSpawnError(f"Failed to start agent worker: {exc}") from exc

        handle = WorkerHandle(session_id, process)
        handle.pump_task = asyncio.create_task(
            self._pump(handle, on_event, on_exit),
            name=f"worker-pump-{session_id}",
        )
        logger.info("[worker] started session=%s pid=%s", session_id, process.pid)
        return handle

    async def terminate(self, handle: WorkerHandle, *, graceful: bool = True) -> None:
        process = handle.process
        handle.terminate_requested = True
        if process.returncode is not None:
            return
        try:
            if graceful:
                process.send_signal(signal.SIGTERM)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self._terminate_timeout_sec)
                    return
                except asyncio.TimeoutError:
                    logger.warning(
                        "[worker] pid=%s ignored SIGTERM for %.1fs; killing",
                        process.pid,
                        self._terminate_timeout_sec,
                    )
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def _pump(
        self,
        handle: WorkerHandle,
        on_event: EventCallback,
        on_exit: ExitCallback,
    ) -> None:
        process = handle.process
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.create_task(self._drain_stderr(handle, process.stderr))
        try:
            async for line in _iter_lines(process.stdout):
                try:
                    event = json.loads(line)
                except ValueError:
                    logger.debug("[worker] non-json stdout session=%s: %s", handle.session_id, line[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                try:
                    await on_event(event)
                except Exception:
                    logger.exception("[worker] event handler failed for session %s", handle.session_id)
            await stderr_task
            returncode = await process.wait()
            logger.info(
                "[worker] exited session=%s pid=%s code=%s",
                handle.session_id,
                process.pid,
                returncode,
            )
        except asyncio.CancelledError:
            stderr_task.cancel()
            if process.returncode is None:
                process.kill()
            raise
        try:
            await on_exit(handle)
        except Exception:
            logger.exception("[worker] exit handler failed for session %s", handle.session_id)

    async def _drain_stderr(self, handle: WorkerHandle, pipe: asyncio.StreamReader) -> None:
        async for line in _iter_lines(pipe):
            handle._stderr_tail.append(line)
            logger.debug("[worker] stderr session=%s: %s", handle.session_id, line)
