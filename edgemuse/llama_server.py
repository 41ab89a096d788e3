"""llama-server runtime for the local engine.

The engine worker hosts a ``LlamaServerEngine``: loading a model starts a
llama.cpp ``llama-server`` subprocess on localhost, and generation streams
tokens from its OpenAI-compatible ``/v1/chat/completions`` endpoint.

The binary is looked up in ``$EDGEMUSE_LLAMA_SERVER``, then
``<data dir>/bin``, then ``$PATH``.
"""

import json
import logging
import os
import platform
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

import httpx

from .config import get_data_dir, get_models_dir

logger = logging.getLogger(__name__)


@dataclass
class SamplingConfig:
    """LLM sampling parameters for controlling generation behavior."""
    top_k: int = 0              # Limits vocabulary to top K tokens (0 = disabled)
    top_p: float = 0.9          # Nucleus sampling threshold (0-1, 1.0 = disabled)
    min_p: float = 0.05         # Minimum probability threshold (filters low-prob tokens)
    repeat_penalty: float = 1.05  # Penalty for repeating tokens (1.0 = no penalty)


# ChatML/instruction markers that signal end of turn
DEFAULT_STOP_SEQUENCES = [
    "<|im_end|>",
    "<|im_start|>",
    "<|endoftext|>",
    "</s>",
    "<|end|>",
    "<|user|>",
    "<|assistant|>",
]


@dataclass
class DownloadProgress:
    """Progress update during download."""
    downloaded_bytes: int
    total_bytes: int
    percent: float
    speed_mbps: float


def get_llama_server_path() -> Optional[Path]:
    """Locate the llama-server binary, or None if it is not installed."""
    override = os.environ.get("EDGEMUSE_LLAMA_SERVER")
    if override:
        return Path(override)

    binary_name = "llama-server.exe" if platform.system() == "Windows" else "llama-server"
    bundled = get_data_dir() / "bin" / binary_name
    if bundled.exists():
        return bundled

    found = shutil.which(binary_name)
    return Path(found) if found else None


def is_llama_server_installed() -> bool:
    """Check if a llama-server binary is available."""
    path = get_llama_server_path()
    return path is not None and path.is_file()


def resolve_model_path(model_id: str, models_dir: Optional[Path] = None) -> Path:
    """Map a model id (or a path to a GGUF file) to the file to load."""
    candidate = Path(model_id)
    if candidate.suffix == ".gguf" and candidate.exists():
        return candidate
    return (models_dir or get_models_dir()) / f"{model_id}.gguf"


async def download_file(
    url: str,
    dest: Path,
    progress_callback: Optional[Callable[[DownloadProgress], None]] = None,
) -> None:
    """Download a file with progress tracking."""
    async with httpx.AsyncClient(follow_redirects=True, timeout=600.0) as client:
        async with client.stream("GET", url) as response:
            response.raise_for_status()

            total = int(response.headers.get("content-length", 0))
            downloaded = 0
            start_time = time.time()

            partial = dest.with_suffix(dest.suffix + ".part")
            with open(partial, "wb") as f:
                async for chunk in response.aiter_bytes(chunk_size=1024 * 1024):
                    f.write(chunk)
                    downloaded += len(chunk)

                    if progress_callback and total > 0:
                        elapsed = time.time() - start_time
                        speed = (downloaded / elapsed / 1024 / 1024) if elapsed > 0 else 0
                        progress_callback(DownloadProgress(
                            downloaded_bytes=downloaded,
                            total_bytes=total,
                            percent=(downloaded / total) * 100,
                            speed_mbps=speed,
                        ))
            partial.replace(dest)


def iter_sse_tokens(lines: Iterable[str]) -> Iterator[str]:
    """Extract content tokens from an OpenAI-style SSE stream.

    Stops at ``data: [DONE]`` or at the first chunk with a ``finish_reason``.
    """
    for line in lines:
        # SSE format: "data: {...}" or "data: [DONE]"
        if not line or not line.startswith("data: "):
            continue

        data_str = line[6:]
        if data_str.strip() == "[DONE]":
            return

        try:
            chunk = json.loads(data_str)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse SSE chunk: {data_str[:100]}")
            continue

        choices = chunk.get("choices", [])
        if not choices:
            continue

        token = (choices[0].get("delta") or {}).get("content") or ""
        if token:
            yield token

        if choices[0].get("finish_reason"):
            return


class LlamaServerProcess:
    """Manages a llama-server subprocess."""

    def __init__(
        self,
        model_path: Path,
        port: int = 8080,
        context_size: int = 4096,
        server_path: Optional[Path] = None,
    ):
        self.model_path = model_path
        self.port = port
        self.context_size = context_size
        self.server_path = server_path
        self.process: Optional[subprocess.Popen] = None

    @property
    def endpoint(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def start(self) -> None:
        """Start the llama-server process."""
        if self.process is not None:
            raise RuntimeError("Server already running")

        server_path = self.server_path or get_llama_server_path()
        if server_path is None or not server_path.exists():
            raise RuntimeError("llama-server not installed (set EDGEMUSE_LLAMA_SERVER or add it to PATH)")

        cmd = [
            str(server_path),
            "-m", str(self.model_path),
            "--port", str(self.port),
            "--host", "127.0.0.1",
            "-c", str(self.context_size),
            "-ngl", "99",   # GPU layers (use all)
            "-np", "1",     # Single slot: one generation at a time
        ]

        logger.info(f"Starting llama-server: {self.model_path.name} on port {self.port}")
        self.process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )

    def stop(self) -> None:
        """Stop the llama-server process."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
            self.process = None

    def is_running(self) -> bool:
        """Check if the server is running."""
        if self.process is None:
            return False
        return self.process.poll() is None

    def wait_for_ready(
        self,
        timeout: float = 120.0,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> bool:
        """Wait for the server to be ready.

        Returns True when server responds with 200 on /health.
        Returns False if process dies or timeout is reached.
        """
        start = time.time()
        with httpx.Client() as client:
            while time.time() - start < timeout:
                if self.process and self.process.poll() is not None:
                    return False

                try:
                    response = client.get(f"{self.endpoint}/health", timeout=5.0)
                    if response.status_code == 200:
                        return True
                    # 503 means "loading" - server is up but model not ready yet
                except httpx.RequestError:
                    pass

                if on_progress:
                    # llama-server reports no load percentage; approach 0.95 over the timeout
                    on_progress(min(0.95, (time.time() - start) / timeout))
                time.sleep(1.0)

        return False

    def read_output(self, max_lines: int = 20) -> list[str]:
        """Last lines of server output (only once the process has exited)."""
        if self.process is None or self.process.stdout is None or self.process.poll() is None:
            return []
        lines = self.process.stdout.read().splitlines()
        return lines[-max_lines:]


class LlamaServerEngine:
    """LocalEngine backed by a llama-server subprocess."""

    def __init__(
        self,
        port: int = 8080,
        models_dir: Optional[Path] = None,
        context_size: int = 4096,
        ready_timeout: float = 120.0,
        server_path: Optional[Path] = None,
    ):
        self.port = port
        self.models_dir = models_dir
        self.context_size = context_size
        self.ready_timeout = ready_timeout
        self.server_path = server_path
        self._server: Optional[LlamaServerProcess] = None
        self._client: Optional[httpx.Client] = None
        self._response: Optional[httpx.Response] = None
        self._interrupted = threading.Event()

    @property
    def endpoint(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=120.0)
        return self._client

    def load(self, model_id: str, on_progress: Callable[[float], None]) -> None:
        model_path = resolve_model_path(model_id, self.models_dir)
        if not model_path.exists():
            raise FileNotFoundError(f"Model file not found: {model_path}")

        # Switching models: only one server per worker
        if self._server is not None:
            self._server.stop()
            self._server = None

        server = LlamaServerProcess(
            model_path,
            port=self.port,
            context_size=self.context_size,
            server_path=self.server_path,
        )
        server.start()
        on_progress(0.0)

        if not server.wait_for_ready(self.ready_timeout, on_progress):
            output = server.read_output()
            server.stop()
            detail = output[-1] if output else "timed out waiting for /health"
            raise RuntimeError(f"llama-server failed to start: {detail}")

        self._server = server
        on_progress(1.0)
        logger.info(f"Model ready: {model_path.name}")

    def stream(self, prompt: str, options: dict) -> Iterator[str]:
        if self._server is None or not self._server.is_running():
            raise RuntimeError("No model loaded")

        self._interrupted.clear()
        sampling = SamplingConfig()
        max_tokens = options.get("max_tokens") or 512
        payload = {
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.get("temperature", 0.7),
            "max_tokens": min(max_tokens, 4096),
            "stream": True,
            "top_p": sampling.top_p,
            "top_k": sampling.top_k,
            "min_p": sampling.min_p,
            "repeat_penalty": sampling.repeat_penalty,
            "stop": DEFAULT_STOP_SEQUENCES,
        }

        # connect fails fast; read is the max gap between tokens
        stream_timeout = httpx.Timeout(connect=10.0, read=60.0, write=30.0, pool=10.0)
        try:
            with self._get_client().stream(
                "POST",
                f"{self.endpoint}/v1/chat/completions",
                json=payload,
                timeout=stream_timeout,
            ) as response:
                if response.status_code != 200:
                    error_text = response.read().decode(errors="replace")[:500]
                    logger.warning(f"llama.cpp streaming returned {response.status_code}: {error_text}")
                    raise RuntimeError(f"LLM server error ({response.status_code})")

                self._response = response
                yield from iter_sse_tokens(response.iter_lines())
        except httpx.TimeoutException as e:
            raise RuntimeError("LLM streaming timed out (no token for 60s)") from e
        except (httpx.HTTPError, httpx.StreamError):
            if self._interrupted.is_set():
                # Closed by interrupt()
                return
            raise
        finally:
            self._response = None

    def interrupt(self) -> None:
        self._interrupted.set()
        response = self._response
        if response is not None:
            response.close()

    def close(self) -> None:
        if self._server is not None:
            self._server.stop()
            self._server = None
        if self._client is not None:
            self._client.close()
            self._client = None
