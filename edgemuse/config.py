"""Configuration for EdgeMuse.

Simple configuration loader from environment variables.
Also supports persistent file-based configuration for the CLI.
"""

import json
import os
import platform
from dataclasses import dataclass, asdict
from functools import lru_cache
from pathlib import Path
from typing import Optional


INFERENCE_MODES = ("local", "edge", "hybrid")

# Models offered by the remote chat service
EDGE_MODELS = [
    {"id": "google-ai-studio/gemini-2.5-flash", "name": "Gemini 2.5 Flash"},
    {"id": "google-ai-studio/gemini-2.5-pro", "name": "Gemini 2.5 Pro"},
    {"id": "google-ai-studio/gemini-2.0-flash", "name": "Gemini 2.0 Flash"},
]


# =============================================================================
# Persistent Configuration (File-based)
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for edgemuse."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "edgemuse"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_config_path() -> Path:
    """Get the path to the config file."""
    return get_data_dir() / "config.json"


def get_models_dir() -> Path:
    """Get the directory local GGUF models are read from."""
    models_dir = get_data_dir() / "models"
    models_dir.mkdir(parents=True, exist_ok=True)
    return models_dir


def get_cache_dir() -> Path:
    """Get the directory for the offline chat cache."""
    cache_dir = get_data_dir() / "offline_chats"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


@dataclass
class EdgeMuseConfig:
    """EdgeMuse persistent user preferences."""
    inference_mode: str = ""  # Empty = EDGEMUSE_MODE, then "hybrid"
    model: str = ""  # Remote model id; empty = EDGEMUSE_MODEL
    local_model_id: str = ""  # Local model loaded on startup (empty = none)
    last_session_id: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def save(self) -> None:
        """Save configuration to disk."""
        config_path = get_config_path()
        with open(config_path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def load(cls) -> "EdgeMuseConfig":
        """Load configuration from disk."""
        config_path = get_config_path()
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    data = json.load(f)
                mode = data.get("inference_mode") or ""
                return cls(
                    inference_mode=mode if mode in INFERENCE_MODES else "",
                    model=data.get("model") or "",
                    local_model_id=data.get("local_model_id", ""),
                    last_session_id=data.get("last_session_id", ""),
                    temperature=data.get("temperature"),
                    max_tokens=data.get("max_tokens"),
                )
            except (json.JSONDecodeError, KeyError, AttributeError):
                pass
        return cls()

    def resolve(self, mode: Optional[str] = None, model: Optional[str] = None) -> tuple[str, str]:
        """Effective (inference mode, remote model).

        Explicit arguments win, then saved preferences, then the
        EDGEMUSE_MODE / EDGEMUSE_MODEL environment defaults.
        """
        env = load_config()
        mode = mode or self.inference_mode or env["MODE"]
        if mode not in INFERENCE_MODES:
            mode = "hybrid"
        return mode, model or self.model or env["MODEL"] or EDGE_MODELS[0]["id"]

    def generation_options(self) -> dict:
        """Sampling options to send with each message (unset ones omitted)."""
        options = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.max_tokens is not None:
            options["max_tokens"] = self.max_tokens
        return options


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with configuration values
    """
    return {
        # Remote chat service
        "BASE_URL": os.getenv("EDGEMUSE_BASE_URL", "http://127.0.0.1:8787"),
        "TIMEOUT": float(os.getenv("EDGEMUSE_TIMEOUT", "120.0")),

        # Routing defaults (the persisted config wins when set)
        "MODE": os.getenv("EDGEMUSE_MODE", "hybrid"),
        "MODEL": os.getenv("EDGEMUSE_MODEL", EDGE_MODELS[0]["id"]),
        "LOCAL_MODEL": os.getenv("EDGEMUSE_LOCAL_MODEL", ""),

        # Local llama-server port
        "LLAMA_PORT": int(os.getenv("EDGEMUSE_LLAMA_PORT", "8080")),

        # Offline cache lifetime
        "CACHE_TTL_HOURS": float(os.getenv("EDGEMUSE_CACHE_TTL_HOURS", "24")),
    }


def get_config_value(key: str, default=None):
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)
