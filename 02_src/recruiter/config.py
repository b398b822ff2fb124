"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "recruiter.db"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the conversation core.

    Durations are in seconds.
    """

    community_name: str = "Wraiven"
    max_clarification_attempts: int = 3

    initial_response_timeout: float = 60 * 60
    clarification_timeout: float = 15 * 60
    general_timeout: float = 60 * 60
    vouch_mention_timeout: float = 10 * 60
    vouch_reaction_timeout: float = 24 * 60 * 60

    classifier_model: str = "claude-3-5-sonnet-20241022"
    classifier_timeout: float = 20.0
    classifier_failure_threshold: int = 3

    dedup_window: float = 5 * 60
    history_limit: int = 50

    member_role: str = "Friend"
    outsider_role: str = "Outsider"

    platform_api_url: str = "http://localhost:3001"
    platform_api_token: str | None = None
    platform_timeout: float = 10.0
    platform_max_retries: int = 2

    cleanup_inactivity: float = 24 * 60 * 60
    cleanup_interval: float = 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from RECRUITER_* environment variables."""
        defaults = cls()
        return cls(
            community_name=os.getenv("RECRUITER_COMMUNITY_NAME", defaults.community_name),
            max_clarification_attempts=_env_int(
                "RECRUITER_MAX_CLARIFICATION_ATTEMPTS",
                defaults.max_clarification_attempts,
            ),
            initial_response_timeout=_env_float(
                "RECRUITER_INITIAL_RESPONSE_TIMEOUT", defaults.initial_response_timeout
            ),
            clarification_timeout=_env_float(
                "RECRUITER_CLARIFICATION_TIMEOUT", defaults.clarification_timeout
            ),
            general_timeout=_env_float("RECRUITER_GENERAL_TIMEOUT", defaults.general_timeout),
            vouch_mention_timeout=_env_float(
                "RECRUITER_VOUCH_MENTION_TIMEOUT", defaults.vouch_mention_timeout
            ),
            vouch_reaction_timeout=_env_float(
                "RECRUITER_VOUCH_REACTION_TIMEOUT", defaults.vouch_reaction_timeout
            ),
            classifier_model=os.getenv("RECRUITER_CLASSIFIER_MODEL", defaults.classifier_model),
            classifier_timeout=_env_float(
                "RECRUITER_CLASSIFIER_TIMEOUT", defaults.classifier_timeout
            ),
            classifier_failure_threshold=_env_int(
                "RECRUITER_CLASSIFIER_FAILURE_THRESHOLD",
                defaults.classifier_failure_threshold,
            ),
            dedup_window=_env_float("RECRUITER_DEDUP_WINDOW", defaults.dedup_window),
            history_limit=_env_int("RECRUITER_HISTORY_LIMIT", defaults.history_limit),
            member_role=os.getenv("RECRUITER_MEMBER_ROLE", defaults.member_role),
            outsider_role=os.getenv("RECRUITER_OUTSIDER_ROLE", defaults.outsider_role),
            platform_api_url=os.getenv("PLATFORM_API_URL", defaults.platform_api_url),
            platform_api_token=os.getenv("PLATFORM_API_TOKEN"),
            platform_timeout=_env_float("PLATFORM_TIMEOUT", defaults.platform_timeout),
            platform_max_retries=_env_int(
                "PLATFORM_MAX_RETRIES", defaults.platform_max_retries
            ),
            cleanup_inactivity=_env_float(
                "RECRUITER_CLEANUP_INACTIVITY", defaults.cleanup_inactivity
            ),
            cleanup_interval=_env_float(
                "RECRUITER_CLEANUP_INTERVAL", defaults.cleanup_interval
            ),
        )
