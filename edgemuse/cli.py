#!/usr/bin/env python3
"""EdgeMuse CLI - chat with a local or remote model from the terminal.

Usage:
    edgemuse chat --mode hybrid --local-model phi-2-q4k
    edgemuse chat --mode edge --model google-ai-studio/gemini-2.5-pro
    edgemuse sessions list
    edgemuse sessions rename <id> "New title"
    edgemuse models --download gemma-2b-it-q4k

Environment variables (alternative to args):
    EDGEMUSE_BASE_URL     Chat service URL (default: http://127.0.0.1:8787)
    EDGEMUSE_MODE         local | edge | hybrid (default: hybrid)
    EDGEMUSE_MODEL        Remote model id
    EDGEMUSE_LOCAL_MODEL  Local model id or path to a .gguf file
    EDGEMUSE_LLAMA_PORT   Local llama-server port (default: 8080)
"""

import argparse
import asyncio
import functools
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .config import (
    EDGE_MODELS,
    INFERENCE_MODES,
    EdgeMuseConfig,
    get_cache_dir,
    get_config_value,
    get_models_dir,
    load_config,
)
from .dispatcher import InferenceDispatcher, SessionContext
from .engine_state import EngineState, EngineStatus
from .models import (
    RECOMMENDED_MODELS,
    LocalModel,
    ModelCatalog,
    estimate_ram_for_model,
    format_model_size,
    format_time,
    render_tool_call,
)
from .session_cache import SessionCache
from .transport import EdgeTransport

log = logging.getLogger("edgemuse")
console = Console()

HELP_TEXT = """Commands:
  /new              start a new session
  /switch <id>      switch to an existing session
  /mode <mode>      local | edge | hybrid
  /sessions         list sessions
  /history          reload and show this session's messages
  /clear            clear this session's messages
  /stop             stop local generation
  /quit             exit
Press Ctrl+C while a reply is streaming to stop local generation."""


class EdgeMuseCLI:
    """Interactive terminal chat."""

    def __init__(
        self,
        config: EdgeMuseConfig,
        base_url: str,
        mode: str,
        model: str,
        session_id: Optional[str] = None,
        local_model: Optional[str] = None,
        llama_port: int = 8080,
    ):
        self.config = config
        self.model = model
        self.local_model = local_model
        self.llama_port = llama_port
        self.catalog = ModelCatalog()
        self.transport = EdgeTransport(base_url, timeout=get_config_value("TIMEOUT", 120.0))
        ttl_hours = get_config_value("CACHE_TTL_HOURS", 24.0)
        self.dispatcher = InferenceDispatcher(
            self.transport,
            cache=SessionCache(get_cache_dir(), ttl=ttl_hours * 3600),
            context=SessionContext(inference_mode=mode),
        )
        if session_id:
            self.dispatcher.switch_session(session_id)
        self._engine = None
        self._input: Optional[asyncio.Future] = None
        self._send_task: Optional[asyncio.Task] = None

    async def run(self) -> int:
        """Run the REPL. Returns exit code."""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
        except NotImplementedError:
            pass  # Windows: Ctrl+C raises KeyboardInterrupt instead

        try:
            if self.local_model and self.dispatcher.inference_mode != "edge":
                await self._start_local_engine()

            console.print(f"[bold]EdgeMuse[/bold] - mode [cyan]{self.dispatcher.inference_mode}[/cyan], "
                          f"session [dim]{self.dispatcher.session_id}[/dim]")
            console.print("[dim]Type /help for commands[/dim]")
            await self._show_history(quiet=True)

            while True:
                try:
                    line = await self._read_line("[bold cyan]you>[/bold cyan] ")
                except (EOFError, asyncio.CancelledError):
                    break
                line = line.strip()
                if not line:
                    continue
                if line.startswith("/"):
                    if not await self._handle_command(line):
                        break
                    continue
                await self._send(line)

            return 0
        except Exception as e:
            log.error(f"Fatal error: {e}")
            return 1
        finally:
            await self._cleanup()

    # =========================================================================
    # Local engine
    # =========================================================================

    def _resolve_local_model(self) -> Optional[LocalModel]:
        path = Path(self.local_model)
        if path.suffix == ".gguf":
            if not path.exists():
                log.error(f"Model not found: {path}")
                return None
            return self.catalog.add_user_model(path)

        model = self.catalog.get(self.local_model)
        if model is None:
            log.error(f"Unknown model ID: {self.local_model}")
            log.info("Available models:")
            for m in RECOMMENDED_MODELS:
                log.info(f"  - {m.id}: {m.name}")
        return model

    async def _start_local_engine(self) -> None:
        """Spawn the engine worker and load the configured model."""
        from .engine_bridge import EngineBridge
        from .llama_server import LlamaServerEngine, is_llama_server_installed
        from .local_engine import LocalEngineController

        model = self._resolve_local_model()
        if model is None:
            return

        factory = functools.partial(LlamaServerEngine, port=self.llama_port, models_dir=get_models_dir())
        self._engine = LocalEngineController(EngineBridge(engine_factory=factory), self.dispatcher.engine_state)
        await self._engine.start()
        self._engine.state.set_available(is_llama_server_installed())
        self._engine.state.subscribe(self._on_engine_state)

        log.info(f"Loading local model {model.name} ({format_model_size(model.size)})...")
        if await self._engine.initialize(model):
            log.info("Local model ready")
        else:
            log.warning(f"Local model unavailable: {self._engine.snapshot.error}")

    def _on_engine_state(self, state: EngineState) -> None:
        if state.status == EngineStatus.INITIALIZING and state.init_progress:
            log.debug(f"Loading model: {state.init_progress:.0f}%")

    def _on_interrupt(self) -> None:
        if self._send_task is not None and not self._send_task.done():
            if self._engine is not None and self._engine.snapshot.status == EngineStatus.GENERATING:
                self._engine.stop()
            else:
                self._send_task.cancel()
            console.print("\n[yellow]Stopping...[/yellow]")
        elif self._input is not None and not self._input.done():
            self._input.cancel()

    def _read_line(self, prompt: str) -> asyncio.Future:
        """Read one line on a daemon thread so Ctrl+C never waits for Enter."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def settle(line, error):
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(line)

        def read():
            try:
                line = console.input(prompt)
            except (EOFError, KeyboardInterrupt):
                loop.call_soon_threadsafe(settle, None, EOFError())
            else:
                loop.call_soon_threadsafe(settle, line, None)

        threading.Thread(target=read, name="repl-input", daemon=True).start()
        self._input = future
        return future

    # =========================================================================
    # Chat
    # =========================================================================

    async def _send(self, text: str) -> None:
        local_generate = self._engine.generate if self._engine is not None else None
        console.print("[bold magenta]assistant>[/bold magenta] ", end="")
        self._send_task = asyncio.ensure_future(self.dispatcher.submit(
            text,
            self.model,
            self.config.generation_options(),
            local_generate=local_generate,
            on_chunk=lambda chunk: console.print(chunk, end="", markup=False, highlight=False),
        ))
        try:
            response = await self._send_task
        except asyncio.CancelledError:
            console.print()
            return
        finally:
            self._send_task = None
        console.print()

        if not response.success:
            style = "yellow" if response.offline else "red"
            console.print(f"[{style}]Error: {response.error}[/{style}]")

    async def _handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False to exit."""
        command, _, arg = line.partition(" ")
        arg = arg.strip()

        if command in ("/quit", "/exit"):
            return False
        if command == "/help":
            console.print(HELP_TEXT)
        elif command == "/new":
            session_id = self.dispatcher.new_session()
            console.print(f"[green]New session:[/green] {session_id}")
        elif command == "/switch" and arg:
            self.dispatcher.switch_session(arg)
            console.print(f"[green]Switched to:[/green] {arg}")
            await self._show_history()
        elif command == "/mode" and arg:
            try:
                self.dispatcher.set_inference_mode(arg)
            except ValueError as e:
                console.print(f"[red]{e}[/red]")
                return True
            self.config.inference_mode = arg
            self.config.save()
            console.print(f"[green]Inference mode:[/green] {arg}")
        elif command == "/sessions":
            await print_sessions(self.dispatcher)
        elif command == "/history":
            await self._show_history()
        elif command == "/stop":
            if self._engine is not None:
                self._engine.stop()
        elif command == "/clear":
            response = await self.dispatcher.clear_messages()
            if not response.success:
                console.print(f"[red]Error: {response.error}[/red]")
        else:
            console.print(f"[yellow]Unknown command: {line}[/yellow]")
        return True

    async def _show_history(self, quiet: bool = False) -> None:
        response = await self.dispatcher.get_messages()
        if not response.success:
            if not quiet:
                style = "yellow" if response.offline else "red"
                console.print(f"[{style}]{response.error}[/{style}]")
            return
        for message in response.data.messages:
            color = "cyan" if message.role == "user" else "magenta"
            console.print(f"[dim]{format_time(message.timestamp)}[/dim] [{color}]{message.role}>[/{color}] ", end="")
            console.print(message.content, markup=False, highlight=False)
            for tool_call in message.tool_calls or ():
                console.print(f"    {render_tool_call(tool_call)}", markup=False)

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        self.config.last_session_id = self.dispatcher.session_id
        self.config.save()
        if self._engine is not None:
            try:
                await self._engine.close()
            except Exception as e:
                log.warning(f"Engine shutdown failed: {e}")
        await self.transport.close()
        log.debug("Goodbye!")


# =============================================================================
# One-shot commands
# =============================================================================

async def print_sessions(dispatcher: InferenceDispatcher) -> bool:
    response = await dispatcher.list_sessions()
    if not response.success:
        console.print(f"[red]Error: {response.error}[/red]")
        return False

    table = Table(title="Sessions")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    for session in response.data or []:
        count = "" if session.message_count is None else str(session.message_count)
        marker = " *" if session.id == dispatcher.session_id else ""
        table.add_row(session.id + marker, session.title, count)
    console.print(table)
    return True


async def run_sessions_command(args: argparse.Namespace, base_url: str) -> int:
    transport = EdgeTransport(base_url)
    dispatcher = InferenceDispatcher(transport)
    try:
        if args.action == "list":
            ok = await print_sessions(dispatcher)
        elif args.action == "delete":
            response = await dispatcher.delete_session(args.session_id)
            ok = response.success
            console.print("[green]Deleted[/green]" if ok else f"[red]Error: {response.error}[/red]")
        else:
            response = await dispatcher.update_session_title(args.session_id, args.title)
            ok = response.success
            console.print("[green]Renamed[/green]" if ok else f"[red]Error: {response.error}[/red]")
        return 0 if ok else 1
    finally:
        await transport.close()


async def run_models_command(args: argparse.Namespace) -> int:
    from .llama_server import download_file

    models_dir = get_models_dir()
    if args.download:
        catalog = ModelCatalog()
        model = catalog.get(args.download)
        if model is None or not model.download_url:
            log.error(f"Unknown model ID: {args.download}")
            return 1
        dest = models_dir / model.filename
        log.info(f"Downloading {model.name} ({format_model_size(model.size)})...")
        last_logged = -10

        def on_progress(progress):
            nonlocal last_logged
            if progress.percent >= last_logged + 10:
                last_logged = int(progress.percent)
                log.info(f"  {last_logged}% ({progress.speed_mbps:.1f} MB/s)")

        try:
            await download_file(model.download_url, dest, on_progress)
        except Exception as e:
            log.error(f"Download failed: {e}")
            return 1
        log.info(f"Download complete: {dest}")
        return 0

    table = Table(title="Local models")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("RAM", justify="right")
    table.add_column("Downloaded")
    for model in RECOMMENDED_MODELS:
        downloaded = (models_dir / model.filename).exists()
        table.add_row(
            model.id,
            model.name,
            format_model_size(model.size),
            format_model_size(int(estimate_ram_for_model(model.size))),
            "yes" if downloaded else "",
        )
    console.print(table)
    console.print("Edge models: " + ", ".join(m["id"] for m in EDGE_MODELS))
    return 0


def main():
    """CLI entry point."""
    load_dotenv()
    env = load_config()

    parser = argparse.ArgumentParser(
        description="EdgeMuse - chat with local and edge language models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--base-url", default=env["BASE_URL"], help="Chat service URL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Interactive chat (default)")
    chat.add_argument("--mode", choices=INFERENCE_MODES, help="Inference mode")
    chat.add_argument("--model", help="Remote model id")
    chat.add_argument("--local-model", help="Local model id or path to a .gguf file")
    chat.add_argument("--session", help="Resume this session id")
    chat.add_argument("--port", type=int, default=env["LLAMA_PORT"], help="Local llama-server port")

    sessions = sub.add_parser("sessions", help="Manage sessions")
    sessions_sub = sessions.add_subparsers(dest="action", required=True)
    sessions_sub.add_parser("list")
    delete = sessions_sub.add_parser("delete")
    delete.add_argument("session_id")
    rename = sessions_sub.add_parser("rename")
    rename.add_argument("session_id")
    rename.add_argument("title")

    models = sub.add_parser("models", help="List or download local models")
    models.add_argument("--download", metavar="MODEL_ID", help="Download a recommended model")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if args.command == "sessions":
        sys.exit(asyncio.run(run_sessions_command(args, args.base_url)))
    if args.command == "models":
        sys.exit(asyncio.run(run_models_command(args)))

    config = EdgeMuseConfig.load()
    mode, model = config.resolve(getattr(args, "mode", None), getattr(args, "model", None))
    local_model = getattr(args, "local_model", None) or config.local_model_id or env["LOCAL_MODEL"]

    cli = EdgeMuseCLI(
        config,
        base_url=args.base_url,
        mode=mode,
        model=model,
        session_id=getattr(args, "session", None) or config.last_session_id or None,
        local_model=local_model or None,
        llama_port=getattr(args, "port", None) or env["LLAMA_PORT"],
    )
    try:
        exit_code = asyncio.run(cli.run())
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
