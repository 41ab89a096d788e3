"""Hybrid inference dispatcher.

Decides per message whether the local engine or the edge service answers:

- ``edge``:   always the edge service.
- ``local``:  only the local engine; fails with LocalEngineNotReady (and
              touches no network) unless a model is ready.
- ``hybrid``: the local engine when a local generator is supplied, with one
              automatic retry on the edge service if it fails.

So a single send makes at most two generation attempts, and two only in
hybrid mode after a local failure. The dispatcher also owns the session
context and the offline read path: history is served from the session
cache when the edge service is unreachable, but generation never is.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .config import INFERENCE_MODES
from .engine_state import EngineStateMachine, EngineStatus
from .errors import CacheMiss, EdgeMuseError, LocalEngineFailure, LocalEngineNotReady, NetworkUnavailable
from .models import ChatResponse, ChatState, Message, SessionInfo, generate_session_title
from .session_cache import SessionCache
from .transport import EdgeTransport, session_base

logger = logging.getLogger(__name__)

# (prompt, on_token, options) -> awaitable that resolves when generation ends
LocalGenerate = Callable[[str, Callable[[str], None], Optional[dict]], Awaitable[Any]]


def _ignore_chunk(chunk: str) -> None:
    pass


@dataclass
class SessionContext:
    """Active session id and routing policy, owned by one dispatcher."""
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    inference_mode: str = "hybrid"
    persisted: bool = False  # known to the edge service

    @property
    def base_path(self) -> str:
        return session_base(self.session_id)


# =============================================================================
# Transcript with two-phase append
# =============================================================================

class StagedMessage:
    """A user message shown optimistically until its send settles."""

    def __init__(self, transcript: "Transcript", message: Message):
        self.transcript = transcript
        self.message = message

    def commit(self, *replies: Message) -> None:
        """Keep the staged message, followed by ``replies``."""
        self.transcript._settle(self, [self.message, *replies])

    def rollback(self) -> None:
        """Discard the staged message."""
        self.transcript._settle(self, [])


class Transcript:
    """Local mirror of the active session's messages."""

    def __init__(self):
        self._messages: list[Message] = []
        self._staged: Optional[StagedMessage] = None

    @property
    def messages(self) -> list[Message]:
        """Committed messages plus the staged one, as a front end should show them."""
        if self._staged is None:
            return list(self._messages)
        return self._messages + [self._staged.message]

    @property
    def committed(self) -> list[Message]:
        return list(self._messages)

    def stage(self, message: Message) -> StagedMessage:
        if self._staged is not None:
            raise RuntimeError("Another message is still pending")
        self._staged = StagedMessage(self, message)
        return self._staged

    def _settle(self, staged: StagedMessage, keep: list[Message]) -> None:
        if self._staged is not staged:
            raise RuntimeError("Message was already committed or rolled back")
        self._staged = None
        self._messages.extend(keep)

    def replace(self, state: ChatState) -> None:
        self._messages = list(state.messages)

    def clear(self) -> None:
        self._messages = []
        self._staged = None


# =============================================================================
# Dispatcher
# =============================================================================

class InferenceDispatcher:
    """Routes chat requests between the local engine and the edge service."""

    def __init__(
        self,
        transport: EdgeTransport,
        cache: Optional[SessionCache] = None,
        engine_state: Optional[EngineStateMachine] = None,
        context: Optional[SessionContext] = None,
    ):
        self.transport = transport
        self.cache = cache or SessionCache()
        self.engine_state = engine_state or EngineStateMachine()
        self.context = context or SessionContext()
        self.transcript = Transcript()
        if self.context.inference_mode not in INFERENCE_MODES:
            raise ValueError(f"Invalid inference mode: {self.context.inference_mode}")

    # -------------------------------------------------------------------------
    # Session identity and policy
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.context.session_id

    @property
    def inference_mode(self) -> str:
        return self.context.inference_mode

    def set_inference_mode(self, mode: str) -> None:
        if mode not in INFERENCE_MODES:
            raise ValueError(f"Invalid inference mode: {mode} (expected one of {', '.join(INFERENCE_MODES)})")
        self.context.inference_mode = mode

    def new_session(self) -> str:
        """Start a fresh, not yet persisted session."""
        self.context.session_id = str(uuid.uuid4())
        self.context.persisted = False
        self.transcript.clear()
        return self.context.session_id

    def switch_session(self, session_id: str) -> None:
        """Target an existing session."""
        self.context.session_id = session_id
        self.context.persisted = True
        self.transcript.clear()

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def send_message(
        self,
        message: str,
        model: str,
        options: Optional[dict] = None,
        local_generate: Optional[LocalGenerate] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> ChatResponse:
        """Generate a reply to ``message`` on the route the mode selects.

        ``on_chunk`` receives every token/fragment in arrival order, partial
        local output before a hybrid fallback included. A streamed success
        carries the assistant Message built from the route that answered;
        a non-streaming edge success carries the ChatState.
        """
        mode = self.context.inference_mode

        if mode == "local":
            if local_generate is None or self.engine_state.status != EngineStatus.READY:
                return ChatResponse.failure(LocalEngineNotReady())
            try:
                return await self._send_local(message, options, local_generate, on_chunk)
            except EdgeMuseError as e:
                logger.error(f"Local generation failed: {e.message}")
                return ChatResponse.failure(e)
            except Exception as e:
                logger.exception("Local generation failed")
                return ChatResponse.failure(LocalEngineFailure(str(e)))
            finally:
                self.engine_state.recover()

        if mode == "hybrid" and local_generate is not None:
            try:
                return await self._send_local(message, options, local_generate, on_chunk)
            except Exception as e:
                logger.warning(f"Local generation failed, falling back to edge inference: {e}")
            finally:
                self.engine_state.recover()

        return await self._send_edge(message, model, options, on_chunk)

    async def _send_local(
        self,
        message: str,
        options: Optional[dict],
        local_generate: LocalGenerate,
        on_chunk: Optional[Callable[[str], None]],
    ) -> ChatResponse:
        tokens: list[str] = []

        def on_token(token: str) -> None:
            tokens.append(token)
            if on_chunk:
                on_chunk(token)

        await local_generate(message, on_token, options)
        return ChatResponse.ok(Message.create("assistant", "".join(tokens)))

    async def _send_edge(
        self,
        message: str,
        model: str,
        options: Optional[dict],
        on_chunk: Optional[Callable[[str], None]],
    ) -> ChatResponse:
        chunks: list[str] = []

        def on_edge_chunk(chunk: str) -> None:
            chunks.append(chunk)
            on_chunk(chunk)

        try:
            body = await self.transport.chat(
                self.session_id, message, model, options, on_edge_chunk if on_chunk else None,
            )
        except EdgeMuseError as e:
            logger.error(f"Failed to send message to edge: {e.message}")
            return ChatResponse.failure(e)
        except Exception:
            logger.exception("Failed to send message to edge")
            return ChatResponse.failure("Failed to send message")

        if on_chunk is not None:
            return ChatResponse.ok(Message.create("assistant", "".join(chunks)))
        try:
            return self._to_response(body, ChatState.from_dict)
        except (KeyError, TypeError, ValueError):
            logger.exception("Malformed chat response")
            return ChatResponse.failure("Failed to send message")

    async def submit(
        self,
        content: str,
        model: str,
        options: Optional[dict] = None,
        local_generate: Optional[LocalGenerate] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> ChatResponse:
        """Send a user message and record it in the transcript only if the send succeeds.

        A session not yet known to the edge service is created first, titled
        after this message.
        """
        content = content.strip()
        if not content:
            return ChatResponse.failure("Message is empty")

        staged = self.transcript.stage(Message.create("user", content))

        try:
            if not self.context.persisted:
                created = await self.create_session(generate_session_title(content), self.session_id, content)
                if not created.success:
                    logger.warning(f"Could not persist session {self.session_id[:8]}: {created.error}")

            response = await self.send_message(content, model, options, local_generate, on_chunk or _ignore_chunk)
        except BaseException:
            staged.rollback()
            raise

        if not response.success:
            staged.rollback()
            return response

        if isinstance(response.data, ChatState):
            staged.commit()
            self.transcript.replace(response.data)
        elif isinstance(response.data, Message):
            staged.commit(response.data)
        else:
            staged.commit()
        return response

    # -------------------------------------------------------------------------
    # History and sessions
    # -------------------------------------------------------------------------

    async def get_messages(self) -> ChatResponse:
        """Load the active session's messages, from cache when offline."""
        session_id = self.session_id
        try:
            body = await self.transport.get_messages(session_id)
        except NetworkUnavailable:
            cached = await self._load_cached(session_id)
            if cached is None:
                return ChatResponse.failure(CacheMiss())
            logger.info(f"Offline: serving cached messages for {session_id[:8]}")
            self.context.persisted = True
            self.transcript.replace(cached)
            return ChatResponse.ok(cached)
        except EdgeMuseError as e:
            logger.error(f"Failed to get messages: {e.message}")
            return ChatResponse.failure(e)
        except Exception:
            logger.exception("Failed to get messages")
            return ChatResponse.failure("Failed to load messages")

        try:
            response = self._to_response(body, ChatState.from_dict)
        except (KeyError, TypeError, ValueError):
            logger.exception("Malformed messages response")
            return ChatResponse.failure("Failed to load messages")

        if response.success and response.data is not None:
            self.context.persisted = True
            await self._store_cached(session_id, response.data)
            self.transcript.replace(response.data)
        return response

    async def _load_cached(self, session_id: str) -> Optional[ChatState]:
        try:
            return await self.cache.load_cached_messages(session_id)
        except (OSError, ValueError) as e:
            logger.warning(f"Offline cache read failed for {session_id[:8]}: {e}")
            return None

    async def _store_cached(self, session_id: str, state: ChatState) -> None:
        try:
            await self.cache.cache_messages(session_id, state)
        except (OSError, ValueError) as e:
            logger.warning(f"Offline cache write failed for {session_id[:8]}: {e}")

    async def clear_messages(self) -> ChatResponse:
        response = await self._call(self.transport.clear_messages(self.session_id), "Failed to clear messages")
        if response.success:
            self.transcript.clear()
        return response

    async def update_model(self, model: str) -> ChatResponse:
        return await self._call(self.transport.update_model(self.session_id, model), "Failed to update model")

    async def create_session(
        self,
        title: Optional[str] = None,
        session_id: Optional[str] = None,
        first_message: Optional[str] = None,
    ) -> ChatResponse:
        response = await self._call(
            self.transport.create_session(title, session_id, first_message),
            "Failed to create session",
        )
        if response.success and session_id == self.session_id:
            self.context.persisted = True
        return response

    async def list_sessions(self) -> ChatResponse:
        return await self._call(
            self.transport.list_sessions(),
            "Failed to list sessions",
            lambda data: [SessionInfo.from_dict(item) for item in data],
        )

    async def delete_session(self, session_id: str) -> ChatResponse:
        return await self._call(self.transport.delete_session(session_id), "Failed to delete session")

    async def update_session_title(self, session_id: str, title: str) -> ChatResponse:
        return await self._call(
            self.transport.update_session_title(session_id, title),
            "Failed to update session title",
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _call(
        self,
        request: Awaitable[dict],
        failure_message: str,
        parse: Optional[Callable[[Any], Any]] = None,
    ) -> ChatResponse:
        try:
            body = await request
            return self._to_response(body, parse)
        except EdgeMuseError as e:
            logger.error(f"{failure_message}: {e.message}")
            return ChatResponse.failure(e)
        except Exception:
            logger.exception(failure_message)
            return ChatResponse.failure(failure_message)

    @staticmethod
    def _to_response(body: Any, parse: Optional[Callable[[Any], Any]] = None) -> ChatResponse:
        """Turn a ``{success, data?, error?}`` body into a ChatResponse."""
        if not isinstance(body, dict):
            raise ValueError(f"Unexpected response body: {type(body).__name__}")
        data = body.get("data")
        if parse is not None and data is not None:
            data = parse(data)
        if body.get("success"):
            return ChatResponse.ok(data)
        return ChatResponse(success=False, data=data, error=body.get("error") or "Request failed", kind="error")
