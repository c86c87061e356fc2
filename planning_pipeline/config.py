"""
Planning pipeline configuration.

Loads model identifiers, policies and the persistence endpoint from
environment variables (with .env_local / .env.local support for local dev).
"""
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class CreateMergePolicy(str, Enum):
    """What a createItem does when its itemKey already exists."""
    MERGE = "merge"  # present fields overwrite, everything else is kept
    REPLACE = "replace"  # item content is rebuilt from the action


class DependencyPolicy(str, Enum):
    """Whether blockedBy edges are restricted to task -> task server-side."""
    ENFORCED = "enforced"
    ADVISORY = "advisory"


DEFAULT_TRANSCRIPTION_MODEL = "gpt-4o-mini-transcribe"
DEFAULT_FALLBACK_TRANSCRIPTION_MODEL = "whisper-1"
DEFAULT_RESPONSES_MODEL = "gpt-4.1-mini"
DEFAULT_MIN_DURATION_MS = 3000


def load_env_files(root: Optional[Path] = None) -> None:
    """Load .env_local / .env.local without overriding exported variables."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "3000  # comment" -> 3000
    - "3000" -> 3000
    - None -> default
    """
    value = os.environ.get(key)
    if not value:
        return default

    if "#" in value:
        value = value.split("#")[0]

    value = value.strip()

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        return default


def _parse_enum_env(key: str, enum_cls, default):
    value = (os.environ.get(key) or "").split("#")[0].strip().lower()
    if not value:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass
class PipelineConfig:
    """Planning pipeline configuration."""

    # OpenAI (transcription + interpretation)
    openai_api_key: Optional[str] = None
    transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL
    fallback_transcription_model: str = DEFAULT_FALLBACK_TRANSCRIPTION_MODEL
    responses_model: str = DEFAULT_RESPONSES_MODEL

    # Clips shorter than this are treated as silence/noise
    min_duration_ms: int = DEFAULT_MIN_DURATION_MS

    # Graph mutation policies
    create_merge_policy: CreateMergePolicy = CreateMergePolicy.MERGE
    dependency_policy: DependencyPolicy = DependencyPolicy.ENFORCED

    # External persistence service; in-memory store when unset
    persistence_url: Optional[str] = None
    persistence_timeout_seconds: int = 10

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables."""
        load_env_files()
        return cls(
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            transcription_model=os.environ.get("OPENAI_TRANSCRIPTION_MODEL", DEFAULT_TRANSCRIPTION_MODEL),
            fallback_transcription_model=os.environ.get(
                "OPENAI_TRANSCRIPTION_FALLBACK_MODEL", DEFAULT_FALLBACK_TRANSCRIPTION_MODEL
            ),
            responses_model=os.environ.get("OPENAI_RESPONSES_MODEL", DEFAULT_RESPONSES_MODEL),
            min_duration_ms=_parse_int_env("MIN_AUDIO_DURATION_MS", default=DEFAULT_MIN_DURATION_MS),
            create_merge_policy=_parse_enum_env("CREATE_MERGE_POLICY", CreateMergePolicy, CreateMergePolicy.MERGE),
            dependency_policy=_parse_enum_env("DEPENDENCY_POLICY", DependencyPolicy, DependencyPolicy.ENFORCED),
            persistence_url=(os.environ.get("PERSISTENCE_URL") or "").rstrip("/") or None,
            persistence_timeout_seconds=_parse_int_env("PERSISTENCE_TIMEOUT_SECONDS", default=10),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )


def get_config() -> PipelineConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = PipelineConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the environment."""
    global _config
    _config = None


# Global config instance (lazy loaded)
_config: Optional[PipelineConfig] = None
