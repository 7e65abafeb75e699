"""Translate agent worker output into UI message stream events.

The worker writes one JSON object per line (``text``, ``thinking``,
``tool_call``, ``tool_result``, ``usage``, ``error``, ``done``). The browser
speaks the AI SDK UI message stream protocol (``text-start``/``text-delta``/
``text-end``, ``reasoning-*``, ``tool-*``, ``finish``). The translator also
accumulates the assistant message so it can be persisted incrementally.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

Event = Dict[str, Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


class AgentEventTranslator:
    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self._started = False
        self._finished = False
        self._open_kind: Optional[str] = None
        self._open_id = ""
        self._part_seq = 0
        self._parts: List[Dict[str, Any]] = []
        self._tool_parts: Dict[str, Dict[str, Any]] = {}
        self._metadata: Dict[str, Any] = {}
        self._created_at = _now_iso()
        self.finalized_parts = 0

    @property
    def has_output(self) -> bool:
        return bool(self._parts)

    @property
    def error(self) -> Optional[str]:
        """Error text reported so far, by the worker or by ``finish``."""
        return self._metadata.get("error")

    def feed(self, raw: Any) -> List[Event]:
        if self._finished or not isinstance(raw, dict):
            return []
        kind = str(raw.get("type", "") or "")
        out: List[Event] = []

        if kind in ("text", "thinking"):
            delta = raw.get("delta")
            if not isinstance(delta, str) or not delta:
                return []
            part_kind = "text" if kind == "text" else "reasoning"
            self._ensure_started(out)
            if self._open_kind != part_kind:
                self._close_open_part(out)
                self._open_part(part_kind, out)
            self._parts[-1]["text"] += delta
            out.append({"type": f"{part_kind}-delta", "id": self._open_id, "delta": delta})
            return out

        if kind == "tool_call":
            tool_call_id = str(raw.get("toolCallId", "") or "") or f"tool-{self._part_seq + 1}"
            tool_name = str(raw.get("toolName", "") or "unknown")
            args = raw.get("args", {})
            self._ensure_started(out)
            self._close_open_part(out)
            self._part_seq += 1
            part = {
                "type": "tool-invocation",
                "toolCallId": tool_call_id,
                "toolName": tool_name,
                "args": args,
                "state": "input-available",
            }
            self._parts.append(part)
            self._tool_parts[tool_call_id] = part
            out.append({"type": "tool-input-start", "toolCallId": tool_call_id, "toolName": tool_name})
            out.append(
                {
                    "type": "tool-input-available",
                    "toolCallId": tool_call_id,
                    "toolName": tool_name,
                    "input": args,
                }
            )
            return out

        if kind == "tool_result":
            tool_call_id = str(raw.get("toolCallId", "") or "")
            part = self._tool_parts.get(tool_call_id)
            if part is None:
                return []
            output = raw.get("output")
            if raw.get("isError"):
                part["state"] = "output-error"
                part["errorText"] = _stringify(output)
                out.append(
                    {
                        "type": "tool-output-error",
                        "toolCallId": tool_call_id,
                        "errorText": part["errorText"],
                    }
                )
            else:
                part["state"] = "output-available"
                part["output"] = output
                out.append({"type": "tool-output-available", "toolCallId": tool_call_id, "output": output})
            self.finalized_parts += 1
            return out

        if kind == "usage":
            usage = {k: v for k, v in raw.items() if k != "type"}
            self._metadata["usage"] = usage
            self._ensure_started(out)
            out.append({"type": "message-metadata", "messageMetadata": {"usage": usage}})
            return out

        if kind == "error":
            text = str(raw.get("message", "") or "Agent error")
            self._ensure_started(out)
            self._close_open_part(out)
            self._metadata["error"] = text
            out.append({"type": "error", "errorText": text})
            return out

        return []

    def finish(self, error: Optional[str] = None) -> List[Event]:
        """Close any open part and end the message; idempotent."""
        if self._finished:
            return []
        out: List[Event] = []
        if error:
            self._ensure_started(out)
        self._close_open_part(out)
        if error and self._metadata.get("error") != error:
            self._metadata["error"] = error
            out.append({"type": "error", "errorText": error})
        if self._started:
            out.append({"type": "finish"})
        self._finished = True
        return out

    def message(self) -> Dict[str, Any]:
        text = "".join(p["text"] for p in self._parts if p.get("type") == "text")
        msg: Dict[str, Any] = {
            "id": self.message_id,
            "role": "assistant",
            "content": text,
            "parts": [dict(p) for p in self._parts],
            "timestamp": self._created_at,
        }
        if self._metadata:
            msg["metadata"] = dict(self._metadata)
        return msg

    def _ensure_started(self, out: List[Event]) -> None:
        if self._started:
            return
        self._started = True
        out.append({"type": "start", "messageId": self.message_id})

    def _open_part(self, part_kind: str, out: List[Event]) -> None:
        self._part_seq += 1
        self._open_kind = part_kind
        self._open_id = f"{part_kind}-{self._part_seq}"
        self._parts.append({"type": part_kind, "text": ""})
        out.append({"type": f"{part_kind}-start", "id": self._open_id})

    def _close_open_part(self, out: List[Event]) -> None:
        if self._open_kind is None:
            return
        out.append({"type": f"{self._open_kind}-end", "id": self._open_id})
        self._open_kind = None
        self._open_id = ""
        self.finalized_parts += 1
