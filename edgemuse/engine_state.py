"""Lifecycle state of the local engine.

The state machine is the only gate on engine bridge calls: it guarantees
that at most one init or generate call is outstanding against the worker.

    idle/error/ready --initialize--> initializing --ok--> ready
                                                  --fail--> error
    ready --generate--> generating --done--> ready
                                   --fail--> error --recover--> ready
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from .errors import LocalEngineBusy, LocalEngineNotReady
from .models import LocalModel

logger = logging.getLogger(__name__)


class EngineStatus(str, Enum):
    """Local engine lifecycle states."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    GENERATING = "generating"
    ERROR = "error"


@dataclass(frozen=True)
class EngineState:
    """Snapshot of the local engine state."""
    is_available: bool = False
    status: EngineStatus = EngineStatus.IDLE
    error: Optional[str] = None
    current_model: Optional[LocalModel] = None
    init_progress: float = 0.0


class EngineStateMachine:
    """Tracks the local engine lifecycle and rejects illegal transitions."""

    def __init__(self, is_available: bool = False):
        self._state = EngineState(is_available=is_available)
        self._listeners: list[Callable[[EngineState], None]] = []

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def status(self) -> EngineStatus:
        return self._state.status

    def subscribe(self, listener: Callable[[EngineState], None]) -> Callable[[], None]:
        """Call ``listener`` with every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Engine state listener failed")

    def set_available(self, available: bool) -> None:
        self._set(is_available=available)

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def begin_initialize(self, model: LocalModel) -> None:
        """Enter ``initializing`` for ``model``.

        Raises:
            LocalEngineBusy: if a model is loading or a generation is running
        """
        if self._state.status in (EngineStatus.INITIALIZING, EngineStatus.GENERATING):
            raise LocalEngineBusy(f"Cannot initialize while {self._state.status.value}")
        logger.debug(f"Engine initializing: {model.id}")
        self._set(status=EngineStatus.INITIALIZING, error=None, current_model=model, init_progress=0.0)

    def update_progress(self, percent: float) -> None:
        if self._state.status != EngineStatus.INITIALIZING:
            return
        self._set(init_progress=max(0.0, min(100.0, percent)))

    def initialize_succeeded(self, model: LocalModel) -> None:
        self._set(status=EngineStatus.READY, current_model=model, init_progress=100.0)

    def initialize_failed(self, message: str) -> None:
        self._set(status=EngineStatus.ERROR, error=message, current_model=None)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def begin_generate(self) -> None:
        """Enter ``generating``. Leaves the state untouched when rejecting.

        Raises:
            LocalEngineNotReady: unless the engine is ready
        """
        if self._state.status != EngineStatus.READY:
            raise LocalEngineNotReady()
        self._set(status=EngineStatus.GENERATING)

    def generate_completed(self) -> None:
        if self._state.status == EngineStatus.GENERATING:
            self._set(status=EngineStatus.READY)

    def generate_failed(self, message: str) -> None:
        self._set(status=EngineStatus.ERROR, error=message)

    def recover(self) -> None:
        """Return to ``ready`` after a generation error; the model is still loaded."""
        if self._state.status == EngineStatus.ERROR and self._state.current_model is not None:
            self._set(status=EngineStatus.READY)
