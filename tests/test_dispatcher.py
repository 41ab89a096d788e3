"""
Tests for hybrid inference routing, the transcript and offline history.
"""

import pytest

from edgemuse.dispatcher import InferenceDispatcher, SessionContext, Transcript
from edgemuse.engine_state import EngineStateMachine
from edgemuse.errors import LocalEngineFailure, NetworkUnavailable, RemoteHttpError
from edgemuse.models import ChatState, Message, get_model_by_id
from edgemuse.session_cache import SessionCache


MODEL = "google-ai-studio/gemini-2.5-flash"


class FakeTransport:
    """Stand-in for EdgeTransport that records every call."""

    def __init__(self, reply="edge reply", error=None):
        self.reply = reply
        self.error = error
        self.calls = []
        self.messages_body = {"success": True, "data": {"messages": [], "model": MODEL}}

    async def chat(self, session_id, message, model, options=None, on_chunk=None):
        self.calls.append(("chat", session_id, message))
        if self.error:
            raise self.error
        if on_chunk is not None:
            for word in self.reply.split(" "):
                on_chunk(word + " ")
            return {"success": True}
        return {
            "success": True,
            "data": {
                "messages": [
                    {"id": "u", "role": "user", "content": message, "timestamp": 1},
                    {"id": "a", "role": "assistant", "content": self.reply, "timestamp": 2},
                ],
                "model": model,
            },
        }

    async def get_messages(self, session_id):
        self.calls.append(("get_messages", session_id))
        if self.error:
            raise self.error
        return self.messages_body

    async def create_session(self, title=None, session_id=None, first_message=None):
        self.calls.append(("create_session", title, session_id, first_message))
        if self.error:
            raise self.error
        return {"success": True, "data": {"id": session_id, "title": title}}

    async def clear_messages(self, session_id):
        self.calls.append(("clear_messages", session_id))
        return {"success": True}

    async def list_sessions(self):
        self.calls.append(("list_sessions",))
        return {"success": True, "data": [{"id": "s1", "title": "First", "messageCount": 2}]}

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


class FakeLocal:
    """local_generate callable that streams words or fails."""

    def __init__(self, reply="local reply", error=None):
        self.reply = reply
        self.error = error
        self.attempts = 0

    async def __call__(self, prompt, on_token, options=None):
        self.attempts += 1
        for word in self.reply.split(" "):
            on_token(word + " ")
        if self.error:
            raise self.error
        return self.reply


def ready_state() -> EngineStateMachine:
    state = EngineStateMachine(is_available=True)
    model = get_model_by_id("phi-2-q4k")
    state.begin_initialize(model)
    state.initialize_succeeded(model)
    return state


def make_dispatcher(mode, transport=None, engine_state=None, cache=None):
    return InferenceDispatcher(
        transport or FakeTransport(),
        cache=cache or SessionCache(),
        engine_state=engine_state,
        context=SessionContext(session_id="session-1", inference_mode=mode),
    )


class TestRouting:
    """Which backend answers, and how many attempts a send makes."""

    @pytest.mark.asyncio
    async def test_hybrid_prefers_local(self):
        transport = FakeTransport()
        local = FakeLocal()
        dispatcher = make_dispatcher("hybrid", transport, ready_state())
        chunks = []

        response = await dispatcher.send_message("hi", MODEL, local_generate=local, on_chunk=chunks.append)

        assert response.success
        assert response.data.role == "assistant"
        assert response.data.content == "local reply "
        assert "".join(chunks) == "local reply "
        assert local.attempts == 1
        assert transport.count("chat") == 0

    @pytest.mark.asyncio
    async def test_hybrid_falls_back_to_edge_once(self):
        transport = FakeTransport()
        local = FakeLocal(error=LocalEngineFailure("decode error"))
        dispatcher = make_dispatcher("hybrid", transport, ready_state())

        response = await dispatcher.send_message("hi", MODEL, local_generate=local)

        assert response.success
        assert isinstance(response.data, ChatState)
        assert response.data.messages[-1].content == "edge reply"
        assert local.attempts == 1
        assert transport.count("chat") == 1

    @pytest.mark.asyncio
    async def test_hybrid_fallback_failure_is_reported(self):
        """When the edge retry also fails, its error is returned; no third attempt."""
        transport = FakeTransport(error=RemoteHttpError(500))
        local = FakeLocal(error=LocalEngineFailure("decode error"))
        dispatcher = make_dispatcher("hybrid", transport, ready_state())

        response = await dispatcher.send_message("hi", MODEL, local_generate=local)

        assert not response.success
        assert response.kind == "remote_http_error"
        assert local.attempts == 1
        assert transport.count("chat") == 1

    @pytest.mark.asyncio
    async def test_hybrid_without_local_uses_edge(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("hybrid", transport)
        response = await dispatcher.send_message("hi", MODEL)
        assert response.success
        assert transport.count("chat") == 1

    @pytest.mark.asyncio
    async def test_local_mode_not_ready_makes_no_request(self):
        transport = FakeTransport()
        local = FakeLocal()
        dispatcher = make_dispatcher("local", transport, EngineStateMachine())

        response = await dispatcher.send_message("hi", MODEL, local_generate=local)

        assert not response.success
        assert response.kind == "local_engine_not_ready"
        assert local.attempts == 0
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_local_mode_without_generator(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("local", transport, ready_state())
        response = await dispatcher.send_message("hi", MODEL)
        assert response.kind == "local_engine_not_ready"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_local_mode_failure_does_not_fall_back(self):
        transport = FakeTransport()
        local = FakeLocal(error=LocalEngineFailure("decode error"))
        dispatcher = make_dispatcher("local", transport, ready_state())

        response = await dispatcher.send_message("hi", MODEL, local_generate=local)

        assert response.kind == "local_engine_failure"
        assert response.error == "decode error"
        assert transport.count("chat") == 0

    @pytest.mark.asyncio
    async def test_local_mode_unexpected_error_is_wrapped(self):
        local = FakeLocal(error=RuntimeError("segfault-ish"))
        dispatcher = make_dispatcher("local", engine_state=ready_state())
        response = await dispatcher.send_message("hi", MODEL, local_generate=local)
        assert response.kind == "local_engine_failure"

    @pytest.mark.asyncio
    async def test_edge_mode_ignores_local(self):
        transport = FakeTransport()
        local = FakeLocal()
        dispatcher = make_dispatcher("edge", transport, ready_state())

        response = await dispatcher.send_message("hi", MODEL, local_generate=local)

        assert response.success
        assert local.attempts == 0
        assert transport.count("chat") == 1

    @pytest.mark.asyncio
    async def test_edge_offline(self):
        dispatcher = make_dispatcher("edge", FakeTransport(error=NetworkUnavailable()))
        response = await dispatcher.send_message("hi", MODEL)
        assert response.offline
        assert response.kind == "network_unavailable"


class TestPolicy:
    """Mode and session changes."""

    def test_invalid_mode_rejected(self):
        dispatcher = make_dispatcher("hybrid")
        with pytest.raises(ValueError):
            dispatcher.set_inference_mode("cloud")
        assert dispatcher.inference_mode == "hybrid"

        with pytest.raises(ValueError):
            make_dispatcher("turbo")

    def test_new_session_resets_transcript(self):
        dispatcher = make_dispatcher("edge")
        dispatcher.transcript.replace(ChatState(messages=[Message.create("user", "old")]))

        new_id = dispatcher.new_session()

        assert new_id != "session-1"
        assert dispatcher.session_id == new_id
        assert dispatcher.context.base_path == f"/api/chat/{new_id}"
        assert dispatcher.transcript.messages == []


class TestSubmit:
    """Two-phase append of user messages."""

    @pytest.mark.asyncio
    async def test_first_message_creates_session_and_commits(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)
        chunks = []

        response = await dispatcher.submit("  Hello edge  ", MODEL, on_chunk=chunks.append)

        assert response.success
        create = [call for call in transport.calls if call[0] == "create_session"][0]
        assert create[1].startswith("Hello edge • ")
        assert create[2:] == ("session-1", "Hello edge")

        messages = dispatcher.transcript.messages
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].content == "Hello edge"
        assert messages[1].content == "edge reply "
        assert "".join(chunks) == "edge reply "

    @pytest.mark.asyncio
    async def test_later_messages_do_not_create_session(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)
        await dispatcher.submit("one", MODEL)
        await dispatcher.submit("two", MODEL)
        assert transport.count("create_session") == 1
        assert len(dispatcher.transcript.messages) == 4

    @pytest.mark.asyncio
    async def test_local_reply_committed(self):
        dispatcher = make_dispatcher("local", engine_state=ready_state())
        response = await dispatcher.submit("hi", MODEL, local_generate=FakeLocal())
        assert response.success
        assert [m.content for m in dispatcher.transcript.messages] == ["hi", "local reply "]

    @pytest.mark.asyncio
    async def test_failed_send_rolls_back(self):
        transport = FakeTransport(error=NetworkUnavailable())
        dispatcher = make_dispatcher("edge", transport)

        response = await dispatcher.submit("hello", MODEL)

        assert not response.success
        assert response.offline
        assert dispatcher.transcript.messages == []

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)
        response = await dispatcher.submit("   ", MODEL)
        assert not response.success
        assert transport.calls == []


class TestTranscript:
    """Staging semantics."""

    def test_staged_message_visible_until_rollback(self):
        transcript = Transcript()
        staged = transcript.stage(Message.create("user", "pending"))
        assert [m.content for m in transcript.messages] == ["pending"]
        assert transcript.committed == []

        staged.rollback()
        assert transcript.messages == []

    def test_only_one_pending_message(self):
        transcript = Transcript()
        transcript.stage(Message.create("user", "first"))
        with pytest.raises(RuntimeError):
            transcript.stage(Message.create("user", "second"))

    def test_settle_twice_rejected(self):
        transcript = Transcript()
        staged = transcript.stage(Message.create("user", "hi"))
        staged.commit(Message.create("assistant", "hello"))
        assert len(transcript.committed) == 2
        with pytest.raises(RuntimeError):
            staged.rollback()


class TestHistory:
    """get_messages with the offline cache."""

    @pytest.mark.asyncio
    async def test_online_load_populates_cache(self):
        transport = FakeTransport()
        transport.messages_body = {
            "success": True,
            "data": {"messages": [{"id": "a", "role": "user", "content": "hi", "timestamp": 1}], "model": MODEL},
        }
        cache = SessionCache()
        dispatcher = make_dispatcher("edge", transport, cache=cache)

        response = await dispatcher.get_messages()

        assert response.success
        assert [m.id for m in dispatcher.transcript.messages] == ["a"]
        cached = await cache.load_cached_messages("session-1")
        assert cached == response.data

    @pytest.mark.asyncio
    async def test_offline_serves_cache(self):
        cache = SessionCache()
        state = ChatState(messages=[Message.create("user", "cached")], model=MODEL)
        await cache.cache_messages("session-1", state)
        dispatcher = make_dispatcher("edge", FakeTransport(error=NetworkUnavailable()), cache=cache)

        response = await dispatcher.get_messages()

        assert response.success
        assert response.data == state
        assert dispatcher.transcript.messages == state.messages

    @pytest.mark.asyncio
    async def test_offline_cache_miss(self):
        dispatcher = make_dispatcher("edge", FakeTransport(error=NetworkUnavailable()))
        response = await dispatcher.get_messages()
        assert not response.success
        assert response.kind == "cache_miss"
        assert response.offline

    @pytest.mark.asyncio
    async def test_http_error_does_not_use_cache(self):
        cache = SessionCache()
        await cache.cache_messages("session-1", ChatState(model=MODEL))
        dispatcher = make_dispatcher("edge", FakeTransport(error=RemoteHttpError(500)), cache=cache)
        response = await dispatcher.get_messages()
        assert response.kind == "remote_http_error"
        assert response.error == "HTTP 500"


class TestSessions:
    """Session management passthrough."""

    @pytest.mark.asyncio
    async def test_list_sessions_parsed(self):
        dispatcher = make_dispatcher("edge")
        response = await dispatcher.list_sessions()
        assert response.success
        assert response.data[0].id == "s1"
        assert response.data[0].message_count == 2

    @pytest.mark.asyncio
    async def test_clear_messages_clears_transcript(self):
        dispatcher = make_dispatcher("edge")
        dispatcher.transcript.replace(ChatState(messages=[Message.create("user", "x")]))
        response = await dispatcher.clear_messages()
        assert response.success
        assert dispatcher.transcript.messages == []


class TestOfflineScenarios:
    """Cache age decides whether offline history is served."""

    class Clock:
        def __init__(self, now):
            self.now = now

        def __call__(self):
            return self.now

    @pytest.mark.asyncio
    @pytest.mark.parametrize("age_hours,served", [(1, True), (25, False)])
    async def test_offline_history_by_age(self, age_hours, served):
        clock = self.Clock(1_000_000.0)
        cache = SessionCache(clock=clock)
        state = ChatState(messages=[Message.create("user", "hi")], model=MODEL)
        await cache.cache_messages("session-1", state)
        clock.now += age_hours * 3600

        dispatcher = make_dispatcher("edge", FakeTransport(error=NetworkUnavailable()), cache=cache)
        response = await dispatcher.get_messages()

        assert response.success is served
        if served:
            assert response.data == state
        else:
            assert response.kind == "cache_miss"
            assert response.error == "You are offline and no cached messages are available."


class TestStreamedFallback:
    """The saved reply comes only from the route that answered."""

    @pytest.mark.asyncio
    async def test_partial_local_output_not_committed(self):
        transport = FakeTransport()
        local = FakeLocal(reply="garbage partial", error=LocalEngineFailure("decode error"))
        dispatcher = make_dispatcher("hybrid", transport, ready_state())
        chunks = []

        response = await dispatcher.submit("hi", MODEL, local_generate=local, on_chunk=chunks.append)

        assert response.success
        assert response.data.content == "edge reply "
        assert [m.content for m in dispatcher.transcript.messages] == ["hi", "edge reply "]
        # The caller still saw everything that was streamed
        assert "".join(chunks) == "garbage partial edge reply "
        assert local.attempts == 1
        assert transport.count("chat") == 1

    @pytest.mark.asyncio
    async def test_streamed_edge_reply_returned(self):
        dispatcher = make_dispatcher("edge")
        response = await dispatcher.send_message("hi", MODEL, on_chunk=lambda chunk: None)
        assert response.success
        assert isinstance(response.data, Message)
        assert response.data.content == "edge reply "


class TestSessionPersistence:
    """create_session runs only for sessions the edge service has never seen."""

    @pytest.mark.asyncio
    async def test_clear_does_not_recreate_session(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)

        await dispatcher.submit("one", MODEL)
        await dispatcher.clear_messages()
        await dispatcher.submit("two", MODEL)

        assert transport.count("create_session") == 1

    @pytest.mark.asyncio
    async def test_switched_session_is_not_recreated(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)
        dispatcher.switch_session("existing")

        await dispatcher.submit("hello", MODEL)

        assert transport.count("create_session") == 0

    @pytest.mark.asyncio
    async def test_loaded_session_is_not_recreated(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)
        await dispatcher.get_messages()
        await dispatcher.submit("hello", MODEL)
        assert transport.count("create_session") == 0

    @pytest.mark.asyncio
    async def test_new_session_is_created_once(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)
        dispatcher.switch_session("existing")
        dispatcher.new_session()

        await dispatcher.submit("first", MODEL)
        await dispatcher.submit("second", MODEL)

        assert transport.count("create_session") == 1
        assert dispatcher.context.persisted

    @pytest.mark.asyncio
    async def test_failed_create_is_retried_on_next_submit(self):
        transport = FakeTransport()
        dispatcher = make_dispatcher("edge", transport)
        transport.error = NetworkUnavailable()
        await dispatcher.submit("offline", MODEL)

        transport.error = None
        await dispatcher.submit("online", MODEL)

        assert transport.count("create_session") == 2
        assert dispatcher.context.persisted


class BrokenCache:
    """SessionCache stand-in whose storage always fails."""

    async def cache_messages(self, session_id, state):
        raise OSError("disk full")

    async def load_cached_messages(self, session_id):
        raise OSError("permission denied")


class TestCacheRobustness:
    """Session ids and cache failures never break get_messages."""

    @pytest.mark.asyncio
    async def test_punctuated_session_id_online_then_offline(self, tmp_path):
        transport = FakeTransport()
        transport.messages_body = {
            "success": True,
            "data": {"messages": [{"id": "a", "role": "user", "content": "hi", "timestamp": 1}], "model": MODEL},
        }
        dispatcher = make_dispatcher("edge", transport, cache=SessionCache(tmp_path))
        dispatcher.switch_session("team.chat:42")

        online = await dispatcher.get_messages()
        assert online.success

        transport.error = NetworkUnavailable()
        offline = await dispatcher.get_messages()
        assert offline.success
        assert offline.data == online.data

    @pytest.mark.asyncio
    async def test_cache_write_failure_still_returns_messages(self):
        dispatcher = make_dispatcher("edge", cache=BrokenCache())
        response = await dispatcher.get_messages()
        assert response.success

    @pytest.mark.asyncio
    async def test_cache_read_failure_is_a_miss(self):
        dispatcher = make_dispatcher("edge", FakeTransport(error=NetworkUnavailable()), cache=BrokenCache())
        response = await dispatcher.get_messages()
        assert response.kind == "cache_miss"
