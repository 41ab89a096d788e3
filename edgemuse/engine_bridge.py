"""Engine bridge: async calls into the engine worker process.

The worker shares no memory with us, so callbacks cannot be passed to it.
Instead each callback is registered here under a handle, only the handle is
sent, and the worker's tagged ``token``/``progress`` events are routed back
to the registered function. Every request carries a call id that the
worker's ``result``/``error`` reply resolves.

The bridge never classifies failures: anything the worker reports arrives
as ``EngineBridgeError`` with the worker's message.
"""

import asyncio
import logging
import multiprocessing
import secrets
import threading
import time
from typing import Any, Callable, Optional

from .engine_worker import LocalEngine, run_worker
from .errors import EngineBridgeError

logger = logging.getLogger(__name__)


class EngineBridge:
    """Caller-side proxy for the engine worker.

    Usage:
        bridge = EngineBridge(engine_factory=LlamaServerEngine)
        async with bridge:
            await bridge.init("phi-2-q4k")
            await bridge.generate("Hello", print)
    """

    def __init__(
        self,
        engine_factory: Optional[Callable[[], LocalEngine]] = None,
        conn=None,
    ):
        if engine_factory is None and conn is None:
            raise ValueError("Either engine_factory or conn is required")
        self.engine_factory = engine_factory
        self._conn = conn
        self._process: Optional[multiprocessing.process.BaseProcess] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None
        self._reader_done: Optional[asyncio.Event] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._callbacks: dict[str, Callable[[Any], None]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "EngineBridge":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Spawn the worker process (unless a connection was given) and start reading."""
        if self._running:
            return
        if self._conn is not None and self._conn.closed:
            # An injected connection cannot be reopened
            raise EngineBridgeError("Engine bridge connection is closed")
        self._loop = asyncio.get_running_loop()

        if self._conn is None:
            ctx = multiprocessing.get_context("spawn")
            parent_conn, child_conn = ctx.Pipe()
            self._process = ctx.Process(
                target=run_worker,
                args=(child_conn, self.engine_factory),
                name="edgemuse-engine",
                daemon=True,
            )
            self._process.start()
            # Drop our copy so the reader sees EOF if the worker dies
            child_conn.close()
            self._conn = parent_conn
            logger.info(f"Engine worker started (pid {self._process.pid})")

        self._reader_done = asyncio.Event()
        self._running = True
        self._reader = threading.Thread(target=self._read_loop, name="engine-bridge-reader", daemon=True)
        self._reader.start()

    async def close(self) -> None:
        """Shut the worker down and fail anything still pending."""
        if self._conn is None or self._conn.closed:
            return
        if self._running:
            try:
                self._conn.send({"op": "shutdown"})
            except (OSError, ValueError):
                pass
            else:
                try:
                    await asyncio.wait_for(self._reader_done.wait(), timeout=10.0)
                except asyncio.TimeoutError:
                    logger.warning("Engine worker did not acknowledge shutdown")

        self._running = False
        if self._process is not None:
            await asyncio.to_thread(self._process.join, 5.0)
            if self._process.is_alive():
                self._process.terminate()
            self._process = None
        self._conn.close()
        if self.engine_factory is not None:
            self._conn = None
        self._fail_pending("Engine bridge closed")

    def _read_loop(self) -> None:
        """Blocking reads from the worker, handed to the event loop (reader thread)."""
        while True:
            try:
                message = self._conn.recv()
            except (EOFError, OSError):
                break
            if message.get("type") == "closed":
                break
            self._call_on_loop(self._dispatch, message)
        self._call_on_loop(self._on_reader_exit)

    def _call_on_loop(self, fn, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _on_reader_exit(self) -> None:
        self._running = False
        self._fail_pending("Engine worker exited")
        self._reader_done.set()

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        self._callbacks.clear()
        for future in pending:
            if not future.done():
                future.set_exception(EngineBridgeError(reason))

    # =========================================================================
    # Event routing
    # =========================================================================

    def _dispatch(self, message: dict) -> None:
        msg_type = message.get("type")

        if msg_type in ("token", "progress"):
            callback = self._callbacks.get(message.get("handle", ""))
            if callback is None:
                # Late event for a call that already settled
                logger.debug(f"Dropping {msg_type} event for released handle")
                return
            try:
                callback(message.get(msg_type))
            except Exception:
                logger.exception(f"{msg_type} callback raised")
            return

        future = self._pending.pop(message.get("call", ""), None)
        if future is None or future.done():
            logger.debug(f"No pending call for {msg_type} event")
            return
        if msg_type == "result":
            future.set_result(message.get("value"))
        elif msg_type == "error":
            future.set_exception(EngineBridgeError(message.get("error") or "Engine error"))
        else:
            logger.warning(f"Unknown engine event: {msg_type}")

    def _generate_id(self) -> str:
        timestamp = time.strftime("%Y%m%d%H%M%S")
        return f"{timestamp}-{secrets.token_hex(8)}"

    def _register(self, callback: Optional[Callable[[Any], None]]) -> Optional[str]:
        if callback is None:
            return None
        handle = self._generate_id()
        self._callbacks[handle] = callback
        return handle

    async def _call(self, op: str, payload: dict, callbacks: dict[str, Optional[Callable]]) -> Any:
        if not self._running:
            raise EngineBridgeError("Engine worker is not running")

        call_id = self._generate_id()
        future = self._loop.create_future()
        self._pending[call_id] = future
        handles = {key: self._register(cb) for key, cb in callbacks.items()}
        try:
            try:
                self._conn.send({"op": op, "call": call_id, **payload, **handles})
            except (OSError, ValueError) as e:
                raise EngineBridgeError(f"Engine worker unreachable: {e}") from e
            return await future
        finally:
            self._pending.pop(call_id, None)
            for handle in handles.values():
                if handle:
                    self._callbacks.pop(handle, None)

    # =========================================================================
    # Public RPC surface
    # =========================================================================

    async def init(self, model_id: str, on_progress: Optional[Callable[[float], None]] = None) -> None:
        """Load ``model_id`` inside the worker.

        Safe to call again after a failed attempt.

        Raises:
            EngineBridgeError: with the worker's message if loading failed
        """
        await self._call("init", {"model_id": model_id}, {"progress_handle": on_progress})

    async def generate(
        self,
        prompt: str,
        on_token: Callable[[str], None],
        options: Optional[dict] = None,
    ) -> None:
        """Stream a completion for ``prompt``, calling ``on_token`` per increment.

        Resolves once the worker reports the generation finished.

        Raises:
            EngineBridgeError: with the worker's message if generation failed
        """
        await self._call(
            "generate",
            {"prompt": prompt, "options": dict(options or {})},
            {"token_handle": on_token},
        )

    def interrupt(self) -> None:
        """Ask the worker to stop the current generation.

        Advisory: a few tokens already in flight may still be delivered.
        Does nothing when no worker is running.
        """
        if not self._running:
            return
        try:
            self._conn.send({"op": "interrupt"})
        except (OSError, ValueError) as e:
            logger.debug(f"Interrupt not delivered: {e}")
