from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


RunStatus = Literal["starting", "running", "done", "error"]
MessageRole = Literal["user", "assistant", "system"]


class UIMessagePart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None


class UIMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    role: MessageRole
    parts: List[UIMessagePart] = Field(default_factory=list)
    content: Optional[str] = None

    def text(self) -> str:
        chunks = [p.text for p in self.parts if p.type == "text" and isinstance(p.text, str)]
        if chunks:
            return "\n".join(chunks)
        return self.content or ""


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[UIMessage] = Field(default_factory=list)
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    def last_user_message(self) -> Optional[UIMessage]:
        for msg in reversed(self.messages):
            if msg.role == "user":
                return msg
        return None


class StopRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")


class StopResponse(BaseModel):
    aborted: bool


class SessionSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    title: str
    created_at: int = Field(alias="createdAt")
    updated_at: int = Field(alias="updatedAt")
    message_count: int = Field(default=0, alias="messageCount")


class SessionListResponse(BaseModel):
    sessions: List[SessionSummary] = Field(default_factory=list)


class CreateSessionRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)


class SessionMessagesResponse(BaseModel):
    id: str
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class AppendMessagesRequest(BaseModel):
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    title: Optional[str] = Field(default=None, max_length=200)
