"""Error taxonomy for EdgeMuse.

Every error carries a ``kind`` tag so callers that only see a normalized
``ChatResponse`` can still tell an offline failure from a generic one.
"""


class EdgeMuseError(Exception):
    """Base class for all EdgeMuse errors."""
    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    @classmethod
    def default_message(cls) -> str:
        return "Unexpected error"


class NetworkUnavailable(EdgeMuseError):
    """The remote endpoint could not be reached at all."""
    kind = "network_unavailable"

    @classmethod
    def default_message(cls) -> str:
        return "You are offline. Please check your connection."


class CacheMiss(NetworkUnavailable):
    """Offline, and no valid cached state exists for the session."""
    kind = "cache_miss"

    @classmethod
    def default_message(cls) -> str:
        return "You are offline and no cached messages are available."


class RemoteHttpError(EdgeMuseError):
    """The remote endpoint answered with a non-2xx status."""
    kind = "remote_http_error"

    def __init__(self, status: int, message: str = ""):
        self.status = status
        super().__init__(message or f"HTTP {status}")


class LocalEngineNotReady(EdgeMuseError):
    """Local generation was requested but no model is ready."""
    kind = "local_engine_not_ready"

    @classmethod
    def default_message(cls) -> str:
        return "Local model not ready. Load a model or switch to Hybrid or Edge mode."


class LocalEngineBusy(EdgeMuseError):
    """The local engine is already initializing or generating."""
    kind = "local_engine_busy"

    @classmethod
    def default_message(cls) -> str:
        return "Local engine is busy"


class LocalEngineFailure(EdgeMuseError):
    """The local engine failed while loading a model or generating."""
    kind = "local_engine_failure"

    @classmethod
    def default_message(cls) -> str:
        return "Local generation failed"


class EngineBridgeError(EdgeMuseError):
    """Raw failure reported by the engine worker process.

    The bridge never interprets the message; the controller maps it onto
    LocalEngineFailure.
    """
    kind = "engine_bridge_error"
