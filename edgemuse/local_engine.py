"""Local engine controller.

Couples one EngineBridge with one EngineStateMachine. Every bridge call is
gated by the state machine, so the worker never sees two outstanding calls.
Raw worker failures are classified here as LocalEngineFailure.
"""

import asyncio
import logging
from typing import Callable, Optional

from .engine_bridge import EngineBridge
from .engine_state import EngineState, EngineStateMachine
from .errors import EngineBridgeError, LocalEngineFailure
from .models import LocalModel

logger = logging.getLogger(__name__)


class LocalEngineController:
    """Load models and generate through the engine worker."""

    def __init__(self, bridge: EngineBridge, state: Optional[EngineStateMachine] = None):
        self.bridge = bridge
        self.state = state or EngineStateMachine()

    @property
    def snapshot(self) -> EngineState:
        return self.state.state

    async def start(self) -> None:
        await self.bridge.start()
        self.state.set_available(True)

    async def close(self) -> None:
        await self.bridge.close()
        self.state.set_available(False)

    async def initialize(self, model: LocalModel) -> bool:
        """Load ``model``. Returns False (with the error recorded in state) on failure.

        Raises:
            LocalEngineBusy: if a load or generation is already running
        """
        self.state.begin_initialize(model)
        logger.info(f"Initializing model: {model.name}")
        try:
            await self.bridge.init(
                model.path or model.id,
                on_progress=lambda fraction: self.state.update_progress(fraction * 100),
            )
        except EngineBridgeError as e:
            logger.error(f"Model initialization failed: {e.message}")
            self.state.initialize_failed(e.message)
            return False
        except asyncio.CancelledError:
            self.state.initialize_failed("Initialization cancelled")
            raise
        self.state.initialize_succeeded(model)
        return True

    async def generate(
        self,
        prompt: str,
        on_token: Callable[[str], None],
        options: Optional[dict] = None,
    ) -> str:
        """Stream a local completion. Returns the full generated text.

        Raises:
            LocalEngineNotReady: unless a model is loaded and idle
            LocalEngineFailure: if the worker reported a generation error
        """
        self.state.begin_generate()
        tokens: list[str] = []

        def relay(token: str) -> None:
            tokens.append(token)
            on_token(token)

        try:
            await self.bridge.generate(prompt, relay, options)
        except EngineBridgeError as e:
            self.state.generate_failed(e.message)
            raise LocalEngineFailure(e.message) from e
        except asyncio.CancelledError:
            self.bridge.interrupt()
            self.state.generate_completed()
            raise
        self.state.generate_completed()
        return "".join(tokens)

    def stop(self) -> None:
        """Request the current generation to stop (eventually)."""
        logger.info("Stopping generation.")
        self.bridge.interrupt()
