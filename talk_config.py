"""Per-user paths, config file access and tunable defaults."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

SAMPLE_RATE = 24000
CHANNELS = 1
BIT_DEPTH = 16

VOICES = (
    "alloy", "ash", "ballad", "coral", "echo", "fable",
    "nova", "onyx", "sage", "shimmer", "verse",
)
DEFAULT_VOICE = "ash"

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_IDLE_TIMEOUT_MINUTES = 30


def config_dir() -> Path:
    override = os.environ.get("AGENT_TALK_HOME")
    if override:
        return Path(override)
    return Path.home() / ".agent-talk"


def config_path() -> Path:
    return config_dir() / "config.json"


def daemon_socket_path() -> Path:
    return config_dir() / "daemon.sock"


def daemon_pid_path() -> Path:
    return config_dir() / "daemon.pid"


def daemon_log_path() -> Path:
    return config_dir() / "daemon.log"


class AuthError(RuntimeError):
    pass


@dataclass
class AuthConfig:
    api_key: str
    base_url: str | None = None


@dataclass
class DaemonConfig:
    idle_timeout_minutes: float = DEFAULT_IDLE_TIMEOUT_MINUTES

    @property
    def idle_timeout_seconds(self) -> float:
        return self.idle_timeout_minutes * 60


# ── Config file ──────────────────────────────────────────────────────────────

def read_config() -> dict:
    path = config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def resolve_auth() -> AuthConfig:
    """Config file credentials first, then OPENAI_API_KEY."""
    auth = read_config().get("auth") or {}
    if auth.get("apiKey"):
        return AuthConfig(api_key=auth["apiKey"], base_url=auth.get("baseUrl"))
    key = os.environ.get("OPENAI_API_KEY")
    if key:
        return AuthConfig(api_key=key)
    raise AuthError("No API key found. Add it to the config file or set OPENAI_API_KEY.")


def resolve_voice() -> str:
    return read_config().get("voice") or DEFAULT_VOICE


def resolve_daemon_config() -> DaemonConfig:
    daemon = read_config().get("daemon") or {}
    minutes = daemon.get("idleTimeoutMinutes", DEFAULT_IDLE_TIMEOUT_MINUTES)
    if not isinstance(minutes, (int, float)) or minutes <= 0:
        minutes = DEFAULT_IDLE_TIMEOUT_MINUTES
    return DaemonConfig(idle_timeout_minutes=minutes)


def write_config(data: dict) -> None:
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n")


def set_default_voice(voice: str) -> None:
    if voice not in VOICES:
        raise ValueError(f"Unknown voice {voice!r}. Choose one of: {', '.join(VOICES)}")
    config = read_config()
    config["voice"] = voice
    write_config(config)


# ── Tunables ─────────────────────────────────────────────────────────────────

class AskTuning(BaseSettings):
    """Timing and loudness constants for one ask turn.

    The loudness thresholds and evidence window are empirically tuned; every
    field can be overridden with AGENT_TALK_<FIELD_NAME_UPPERCASE>.
    """

    model_config = SettingsConfigDict(env_prefix="AGENT_TALK_")

    echo_guard_ms: int = 1500
    min_speech_rms: float = 220
    min_speech_rms_relaxed: float = 120
    min_speech_rms_relax_after_ms: int = 500
    evidence_preroll_ms: int = 200
    evidence_postroll_ms: int = 1500
    stream_delay_ms: int = Field(default=30, gt=0)
    response_start_timeout: float = 10.0
    connect_timeout: float = 15.0
    capture_poll_ms: int = Field(default=10, gt=0)
    capture_batch_frames: int = Field(default=64, gt=0)


class SayTuning(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENT_TALK_SAY_")

    audio_done_settle_ms: int = 140
    response_done_fallback_ms: int = 700
    fallback_settle_ms: int = 220
    drain_poll_ms: int = Field(default=20, gt=0)
    drain_zero_streak: int = Field(default=3, gt=0)
    drain_stall_ms: int = 3000
    drain_deadline_ms: int = 30000
    connect_timeout: float = 15.0
