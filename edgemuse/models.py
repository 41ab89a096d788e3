"""Chat data model and local model catalog.

Wire types serialize to the camelCase JSON the chat service speaks.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .errors import EdgeMuseError


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Chat messages and sessions
# =============================================================================

@dataclass(frozen=True)
class ToolCall:
    """A tool invocation attached to an assistant message."""
    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    result: Optional[dict] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "arguments": self.arguments}
        if self.result is not None:
            data["result"] = self.result
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            arguments=data.get("arguments") or {},
            result=data.get("result"),
        )


@dataclass(frozen=True)
class Message:
    """A single chat message. Never modified after it is created."""
    id: str
    role: str  # "user" or "assistant"
    content: str
    timestamp: int  # epoch ms
    tool_calls: Optional[tuple[ToolCall, ...]] = None

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {self.role}")
        if self.tool_calls is not None and not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def create(cls, role: str, content: str) -> "Message":
        """Build a new message with a fresh id and the current timestamp."""
        return cls(id=str(uuid.uuid4()), role=role, content=content, timestamp=now_ms())

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_calls is not None:
            data["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        tool_calls = data.get("toolCalls")
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content", ""),
            timestamp=int(data.get("timestamp", 0)),
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in tool_calls) if tool_calls is not None else None,
        )


@dataclass
class ChatState:
    """Messages and selected model of one session."""
    messages: list[Message] = field(default_factory=list)
    model: str = ""

    def to_dict(self) -> dict:
        return {"messages": [m.to_dict() for m in self.messages], "model": self.model}

    @classmethod
    def from_dict(cls, data: dict) -> "ChatState":
        return cls(
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            model=data.get("model", ""),
        )


@dataclass
class SessionInfo:
    """A persisted chat session as listed by the service."""
    id: str
    title: str
    created_at: Optional[int] = None
    last_active: Optional[int] = None
    message_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SessionInfo":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            created_at=data.get("createdAt"),
            last_active=data.get("lastActive"),
            message_count=data.get("messageCount"),
        )


@dataclass
class ChatResponse:
    """Normalized outcome of every dispatcher operation.

    ``kind`` is the error tag of the failure (see ``edgemuse.errors``) so a
    front end can show an offline notice instead of a generic error.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ChatResponse":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: "EdgeMuseError | str") -> "ChatResponse":
        if isinstance(error, EdgeMuseError):
            return cls(success=False, error=error.message, kind=error.kind)
        return cls(success=False, error=error, kind="error")

    @property
    def offline(self) -> bool:
        """True when the failure came from missing connectivity."""
        return self.kind in ("network_unavailable", "cache_miss")


# =============================================================================
# Local model catalog
# =============================================================================

@dataclass(frozen=True)
class LocalModel:
    """A model that can be loaded by the local engine."""
    id: str                     # Unique identifier
    name: str                   # Display name
    size: int                   # Size in bytes
    quantization: str           # e.g. "4-bit"
    family: str                 # e.g. "Llama"
    source: str                 # "recommended" or "user"
    download_url: Optional[str] = None  # For recommended models
    path: Optional[str] = None          # For user-registered model files

    @property
    def filename(self) -> str:
        """GGUF filename used inside the models directory."""
        if self.path:
            return Path(self.path).name
        return f"{self.id}.gguf"


RECOMMENDED_MODELS: list[LocalModel] = [
    LocalModel(
        id="phi-2-q4k",
        name="Phi-2 (Q4K)",
        size=1_620_000_000,
        quantization="4-bit",
        family="Phi",
        source="recommended",
        download_url="https://huggingface.co/microsoft/phi-2/resolve/main/model-q4k.gguf",
    ),
    LocalModel(
        id="llama-3-8b-instruct-q4k",
        name="Llama 3 8B Instruct (Q4K)",
        size=4_100_000_000,
        quantization="4-bit",
        family="Llama",
        source="recommended",
        download_url="https://huggingface.co/meta-llama/Meta-Llama-3-8B-Instruct/resolve/main/model-q4k.gguf",
    ),
    LocalModel(
        id="gemma-2b-it-q4k",
        name="Gemma 2B IT (Q4K)",
        size=1_500_000_000,
        quantization="4-bit",
        family="Gemma",
        source="recommended",
        download_url="https://huggingface.co/google/gemma-2b-it/resolve/main/model-q4k.gguf",
    ),
]


def get_model_by_id(model_id: str) -> Optional[LocalModel]:
    """Get a recommended model by its ID."""
    for model in RECOMMENDED_MODELS:
        if model.id == model_id:
            return model
    return None


class ModelCatalog:
    """Recommended models plus models registered from local files."""

    def __init__(self):
        self._user_models: dict[str, LocalModel] = {}

    def add_user_model(self, path: Path) -> LocalModel:
        """Register a GGUF file from disk as a user model."""
        path = Path(path)
        stat = path.stat()
        model = LocalModel(
            id=f"user-{path.name}-{int(stat.st_mtime * 1000)}",
            name=path.name,
            size=stat.st_size,
            quantization="Unknown",
            family="Unknown",
            source="user",
            path=str(path),
        )
        self._user_models[model.id] = model
        return model

    def list_user_models(self) -> list[LocalModel]:
        return list(self._user_models.values())

    def remove_user_model(self, model_id: str) -> bool:
        return self._user_models.pop(model_id, None) is not None

    def get(self, model_id: str) -> Optional[LocalModel]:
        return self._user_models.get(model_id) or get_model_by_id(model_id)

    def all(self) -> list[LocalModel]:
        return RECOMMENDED_MODELS + self.list_user_models()


def format_model_size(size_bytes: int) -> str:
    """Human readable size, e.g. ``1.51 GB``."""
    if size_bytes == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size_bytes)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{float(f'{value:.2f}'):g} {units[i]}"


def estimate_ram_for_model(size_bytes: int) -> float:
    """Rough RAM need: model size plus ~20% for context and runtime."""
    return size_bytes * 1.2


# =============================================================================
# Display helpers
# =============================================================================

def format_time(timestamp_ms: int) -> str:
    """Format an epoch-ms timestamp as local ``HH:MM``."""
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%H:%M")


def generate_session_title(first_user_message: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Title for a new session, derived from its first user message."""
    stamp = (now or datetime.now()).strftime("%m/%d %H:%M")
    if not first_user_message or not first_user_message.strip():
        return f"Chat {stamp}"
    clean = " ".join(first_user_message.split())
    truncated = clean[:37] + "..." if len(clean) > 40 else clean
    return f"{truncated} • {stamp}"


def render_tool_call(tool_call: ToolCall) -> str:
    """One-line summary of a tool call and its result."""
    result = tool_call.result
    if not result:
        return f"⚠️ {tool_call.name}: No result"
    if "error" in result:
        return f"❌ {tool_call.name}: {result['error']}"
    if "content" in result:
        content = (result.get("content") or "")[:50]
        return f"🔧 {tool_call.name}: {content}..."
    if tool_call.name == "get_weather":
        return (
            f"🌤️ Weather in {result.get('location')}: "
            f"{result.get('temperature')}°C, {result.get('condition')}"
        )
    return f"🔧 {tool_call.name}: Done"
