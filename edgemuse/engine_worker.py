"""Engine worker: the isolated side of the engine bridge.

Runs in its own process and owns the single LocalEngine instance. It talks
to the caller only through a duplex connection, one dict per message.

Requests (caller -> worker):
    {"op": "init", "call": id, "model_id": str, "progress_handle": h | None}
    {"op": "generate", "call": id, "prompt": str, "options": {...}, "token_handle": h}
    {"op": "interrupt"}
    {"op": "shutdown"}

Events (worker -> caller):
    {"type": "progress", "handle": h, "progress": 0..1}
    {"type": "token", "handle": h, "token": str}
    {"type": "result", "call": id}
    {"type": "error", "call": id, "error": str}
    {"type": "closed"}

Callbacks never cross the boundary; only their handles do.
"""

import logging
import threading
from typing import Callable, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)


class LocalEngine(Protocol):
    """Model runtime hosted inside the worker."""

    def load(self, model_id: str, on_progress: Callable[[float], None]) -> None:
        """Load ``model_id``, reporting progress as a 0..1 fraction."""

    def stream(self, prompt: str, options: dict) -> Iterator[str]:
        """Yield generated text increments in order."""

    def interrupt(self) -> None:
        """Ask an in-flight ``stream`` to stop early."""

    def close(self) -> None:
        """Release the runtime."""


class EngineWorker:
    """Serves bridge requests against one engine.

    The request loop stays on the calling thread so ``interrupt`` is handled
    while a job (init or generate) runs on the job thread.
    """

    def __init__(self, conn, engine: LocalEngine):
        self.conn = conn
        self.engine = engine
        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._job: Optional[threading.Thread] = None

    def send(self, message: dict) -> None:
        try:
            with self._send_lock:
                self.conn.send(message)
        except (OSError, ValueError) as e:
            # Caller end closed; the request loop sees EOF and exits.
            logger.warning(f"Engine worker send failed: {e}")

    def serve(self) -> None:
        """Handle requests until shutdown or until the caller goes away."""
        while True:
            try:
                request = self.conn.recv()
            except (EOFError, OSError):
                logger.info("Engine worker: caller disconnected")
                self._interrupt()
                break

            op = request.get("op")
            if op == "init":
                self._start_job(self._run_init, request)
            elif op == "generate":
                self._start_job(self._run_generate, request)
            elif op == "interrupt":
                self._interrupt()
            elif op == "shutdown":
                self._interrupt()
                if self._job is not None:
                    self._job.join(timeout=5.0)
                self.send({"type": "closed"})
                break
            else:
                logger.warning(f"Engine worker: unknown op {op!r}")
                if "call" in request:
                    self.send({"type": "error", "call": request["call"], "error": f"Unknown operation: {op}"})

    def _start_job(self, target: Callable[[dict], None], request: dict) -> None:
        if self._job is not None and self._job.is_alive():
            self.send({"type": "error", "call": request["call"], "error": "Engine worker is busy"})
            return
        self._stop.clear()
        self._job = threading.Thread(target=target, args=(request,), name="engine-job", daemon=True)
        self._job.start()

    def _interrupt(self) -> None:
        if self._job is None or not self._job.is_alive():
            return
        self._stop.set()
        try:
            self.engine.interrupt()
        except Exception as e:
            logger.warning(f"Engine interrupt failed: {e}")

    def _fail(self, call: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        self.send({"type": "error", "call": call, "error": message})

    def _run_init(self, request: dict) -> None:
        call = request["call"]
        handle = request.get("progress_handle")

        def on_progress(fraction: float) -> None:
            if handle:
                self.send({"type": "progress", "handle": handle, "progress": fraction})

        try:
            self.engine.load(request["model_id"], on_progress)
        except Exception as e:
            logger.exception(f"Model load failed: {request['model_id']}")
            self._fail(call, e)
            return
        self.send({"type": "result", "call": call})

    def _run_generate(self, request: dict) -> None:
        call = request["call"]
        handle = request["token_handle"]
        count = 0
        try:
            for token in self.engine.stream(request["prompt"], request.get("options") or {}):
                if self._stop.is_set():
                    logger.debug(f"Generation interrupted after {count} tokens")
                    break
                if token:
                    self.send({"type": "token", "handle": handle, "token": token})
                    count += 1
        except Exception as e:
            logger.exception("Generation failed")
            self._fail(call, e)
            return
        self.send({"type": "result", "call": call})


def run_worker(conn, engine_factory: Callable[[], LocalEngine]) -> None:
    """Process entry point: build the engine and serve until shutdown."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] engine-worker: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    engine = engine_factory()
    try:
        EngineWorker(conn, engine).serve()
    finally:
        try:
            engine.close()
        finally:
            conn.close()
