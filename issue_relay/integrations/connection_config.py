"""
Resolved process configuration.

Read once from the environment at process start and handed by reference to
everything that composes tool servers or builds agents. Secrets live only in
this frozen object; nothing deeper in the pipeline reads the environment.
"""

import os
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from issue_relay.utils.logger import get_logger

logger = get_logger("connection_config")

DEFAULT_MODEL = "claude-3-opus-20240229"
DEFAULT_ISSUE_REPO = "https://github.com/edshen17/mcp-hackathon"

# Env var name -> ResolvedSettings attribute
SECRET_FIELDS = {
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "SUPABASE_ACCESS_TOKEN": "supabase_access_token",
    "GITHUB_PERSONAL_ACCESS_TOKEN": "github_personal_access_token",
}


class ConfigurationMissingError(Exception):
    """One or more required secrets are not configured."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        message = " ".join(f"{name} is not set." for name in self.missing)
        super().__init__(f"Server configuration error: {message}")


@dataclass(frozen=True)
class ResolvedSettings:
    """Immutable process configuration. Plaintext secrets live only in memory."""

    # Secrets
    anthropic_api_key: str = ""
    supabase_access_token: str = ""
    github_personal_access_token: str = ""

    # LLM
    model_id: str = DEFAULT_MODEL
    temperature: float = 0.1

    # Tool server targets
    supabase_project_ref: str = ""
    github_issue_repo: str = DEFAULT_ISSUE_REPO
    github_toolsets: str = "issues"

    # Stage budgets
    lookup_max_steps: int = 30
    issue_max_steps: int = 10
    agent_timeout_seconds: Optional[float] = None

    cors_origins: tuple = ("http://localhost:3000",)

    def secret(self, env_name: str) -> str:
        return getattr(self, SECRET_FIELDS[env_name])

    def missing(self, env_names: Iterable[str]) -> list[str]:
        """Names from env_names whose secret is empty, in order, without duplicates."""
        result: list[str] = []
        for name in env_names:
            if name not in result and not self.secret(name):
                result.append(name)
        return result

    def require(self, env_names: Iterable[str]) -> None:
        missing = self.missing(env_names)
        if missing:
            logger.error("Required configuration missing", extra={
                "action": "config_missing", "extra": {"missing": missing},
            })
            raise ConfigurationMissingError(missing)


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default
    return value if value > 0 else default


def _float(environ: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ResolvedSettings:
    """Build settings from environment variables (os.environ by default)."""
    env = os.environ if environ is None else environ

    temperature = _float(env, "LLM_TEMPERATURE", 0.1)
    if temperature is None or not 0.0 <= temperature <= 1.0:
        logger.warning("LLM_TEMPERATURE out of range, using 0.1")
        temperature = 0.1

    timeout = _float(env, "AGENT_TIMEOUT_SECONDS", None)
    if timeout is not None and timeout <= 0:
        timeout = None

    origins = tuple(o.strip() for o in env.get("CORS_ORIGINS", "").split(",") if o.strip())

    settings = ResolvedSettings(
        anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
        supabase_access_token=env.get("SUPABASE_ACCESS_TOKEN", ""),
        github_personal_access_token=env.get("GITHUB_PERSONAL_ACCESS_TOKEN", ""),
        model_id=env.get("ANTHROPIC_MODEL", "") or DEFAULT_MODEL,
        temperature=temperature,
        supabase_project_ref=env.get("SUPABASE_PROJECT_REF", ""),
        github_issue_repo=env.get("GITHUB_ISSUE_REPO", "") or DEFAULT_ISSUE_REPO,
        github_toolsets=env.get("GITHUB_TOOLSETS", "") or "issues",
        lookup_max_steps=_int(env, "LOOKUP_MAX_STEPS", 30),
        issue_max_steps=_int(env, "ISSUE_MAX_STEPS", 10),
        agent_timeout_seconds=timeout,
        cors_origins=origins or ResolvedSettings.cors_origins,
    )
    logger.info("Settings resolved", extra={
        "action": "settings_loaded",
        "extra": {
            "model_id": settings.model_id,
            "lookup_max_steps": settings.lookup_max_steps,
            "issue_max_steps": settings.issue_max_steps,
            "secrets_present": [n for n in SECRET_FIELDS if settings.secret(n)],
        },
    })
    return settings


# Module-level singleton for convenience
_settings: ResolvedSettings | None = None


def get_settings() -> ResolvedSettings:
    """Get or create the process-wide settings."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
