"""Agent worker process for one web chat run.

Reads the agent-side transcript for ``--session-id``, streams a chat
completion for ``--message`` and writes one JSON event per line to stdout::

    {"type": "text", "delta": "..."}
    {"type": "thinking", "delta": "..."}
    {"type": "usage", "inputTokens": 12, "outputTokens": 40, "totalTokens": 52}
    {"type": "error", "message": "..."}
    {"type": "done"}

SIGTERM stops streaming, saves whatever was produced to the transcript and
exits with status 143.
"""

import argparse
import json
import os
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO

from openai import OpenAI, RateLimitError


SYSTEM_PROMPT = (
    "You are the assistant inside a personal CRM and knowledge base workspace. "
    "Answer concisely and refer to workspace files by their path when relevant."
)
EXIT_TERMINATED = 143
_MAX_HISTORY_MESSAGES = 40


class WorkerInterrupted(Exception):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_sessions_dir() -> Path:
    raw = os.getenv("AGENT_SESSIONS_DIR", "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".openclaw" / "agents" / "main" / "sessions"


class EventWriter:
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def emit(self, event_type: str, **payload: Any) -> None:
        event = {"type": event_type, **payload}
        self.stream.write(json.dumps(event, ensure_ascii=False) + "\n")
        self.stream.flush()


class Transcript:
    def __init__(self, path: Path) -> None:
        self.path = path

    def load_messages(self) -> List[Dict[str, str]]:
        if not self.path.exists():
            return []
        messages: List[Dict[str, str]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if not isinstance(entry, dict) or entry.get("type") != "message":
                continue
            msg = entry.get("message", {})
            role = msg.get("role") if isinstance(msg, dict) else None
            if role not in ("user", "assistant"):
                continue
            content = msg.get("content", [])
            if isinstance(content, str):
                text = content
            else:
                text = "\n".join(
                    str(p.get("text", ""))
                    for p in content
                    if isinstance(p, dict) and p.get("type") == "text"
                )
            if text.strip():
                messages.append({"role": role, "content": text})
        return messages[-_MAX_HISTORY_MESSAGES:]

    def append(self, role: str, text: str, thinking: str = "") -> None:
        content: List[Dict[str, str]] = []
        if thinking:
            content.append({"type": "thinking", "thinking": thinking})
        content.append({"type": "text", "text": text})
        entry = {
            "type": "message",
            "timestamp": _now_iso(),
            "message": {"role": role, "content": content},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")


class StreamingLLM:
    def __init__(self, model: str, client: Any = None, max_retries: int = 3) -> None:
        self.client = client if client is not None else OpenAI()
        self.model = model
        self.max_retries = max_retries

    def stream(self, messages: List[Dict[str, str]]) -> Any:
        last_exc: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                return self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    stream=True,
                    stream_options={"include_usage": True},
                )
            except RateLimitError as exc:
                last_exc = exc
                # Exponential backoff for transient rate-limit pressure.
                if attempt < self.max_retries - 1:
                    time.sleep(1.2 * (2**attempt))
                    continue
                raise
        if last_exc:
            raise last_exc
        raise RuntimeError("Unexpected failure in chat completion.")


def _usage_payload(usage: Any) -> Dict[str, int]:
    def pick_int(keys: List[str]) -> int:
        for key in keys:
            val = usage.get(key) if isinstance(usage, dict) else getattr(usage, key, None)
            if isinstance(val, int):
                return val
        return 0

    input_tokens = pick_int(["prompt_tokens", "input_tokens"])
    output_tokens = pick_int(["completion_tokens", "output_tokens"])
    total_tokens = pick_int(["total_tokens"]) or input_tokens + output_tokens
    return {
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "totalTokens": total_tokens,
    }


class ChatAgent:
    def __init__(
        self,
        llm: StreamingLLM,
        transcript: Transcript,
        writer: EventWriter,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.llm = llm
        self.transcript = transcript
        self.writer = writer
        self.system_prompt = system_prompt
        self.reply = ""
        self.thinking = ""

    def run(self, message: str) -> None:
        history = self.transcript.load_messages()
        self.transcript.append("user", message)
        messages = [{"role": "system", "content": self.system_prompt}, *history]
        messages.append({"role": "user", "content": message})
        try:
            for chunk in self.llm.stream(messages):
                self._handle_chunk(chunk)
        finally:
            if self.reply or self.thinking:
                self.transcript.append("assistant", self.reply, thinking=self.thinking)
        self.writer.emit("done")

    def _handle_chunk(self, chunk: Any) -> None:
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            self.writer.emit("usage", **_usage_payload(usage))
        for choice in getattr(chunk, "choices", None) or []:
            delta = getattr(choice, "delta", None)
            if delta is None:
                continue
            reasoning = getattr(delta, "reasoning_content", None)
            if isinstance(reasoning, str) and reasoning:
                self.thinking += reasoning
                self.writer.emit("thinking", delta=reasoning)
            content = getattr(delta, "content", None)
            if isinstance(content, str) and content:
                self.reply += content
                self.writer.emit("text", delta=content)


def _install_sigterm_handler() -> Callable[..., Any]:
    def handle(_signum: int, _frame: Any) -> None:
        raise WorkerInterrupted()

    return signal.signal(signal.SIGTERM, handle)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Web chat agent worker")
    parser.add_argument("--message", required=True, help="User message for this run")
    parser.add_argument("--session-id", required=True, help="Agent session identifier")
    parser.add_argument(
        "--model", default=os.getenv("OPENAI_MODEL", "gpt-4.1"), help="Chat model"
    )
    parser.add_argument(
        "--sessions-dir",
        default="",
        help="Directory holding agent session transcripts",
    )
    args = parser.parse_args(argv)

    sessions_dir = Path(args.sessions_dir).expanduser() if args.sessions_dir else default_sessions_dir()
    writer = EventWriter()
    transcript = Transcript(sessions_dir / f"{args.session_id}.jsonl")
    previous_handler = _install_sigterm_handler()
    try:
        agent = ChatAgent(StreamingLLM(args.model), transcript, writer)
        agent.run(args.message)
    except WorkerInterrupted:
        return EXIT_TERMINATED
    except Exception as exc:
        writer.emit("error", message=str(exc))
        print(f"[worker] failed: {exc}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    return 0


if __name__ == "__main__":
    sys.exit(main())
