"""EdgeMuse - hybrid local/edge chat client."""

from .dispatcher import InferenceDispatcher, SessionContext, Transcript
from .engine_state import EngineState, EngineStateMachine, EngineStatus
from .errors import (
    CacheMiss,
    EdgeMuseError,
    EngineBridgeError,
    LocalEngineBusy,
    LocalEngineFailure,
    LocalEngineNotReady,
    NetworkUnavailable,
    RemoteHttpError,
)
from .models import ChatResponse, ChatState, LocalModel, Message, SessionInfo, ToolCall
from .session_cache import SessionCache
from .transport import EdgeTransport

__version__ = "0.1.0"

__all__ = [
    "CacheMiss",
    "ChatResponse",
    "ChatState",
    "EdgeMuseError",
    "EdgeTransport",
    "EngineBridgeError",
    "EngineState",
    "EngineStateMachine",
    "EngineStatus",
    "InferenceDispatcher",
    "LocalEngineBusy",
    "LocalEngineFailure",
    "LocalEngineNotReady",
    "LocalModel",
    "Message",
    "NetworkUnavailable",
    "RemoteHttpError",
    "SessionCache",
    "SessionContext",
    "SessionInfo",
    "ToolCall",
    "Transcript",
]
