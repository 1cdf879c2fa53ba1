"""Application settings loaded from environment variables."""

import os
from dataclasses import dataclass, field
from typing import Optional

MAX_SNAPSHOT_LIMIT = 100
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_tokens(value: str) -> dict[str, tuple[str, Optional[str]]]:
    """
    Parse AUTH_TOKENS: comma-separated `token=subject:email` entries.

    The email part is optional (`token=subject`).
    """
    tokens: dict[str, tuple[str, Optional[str]]] = {}
    for entry in value.split(","):
        entry = entry.strip()
        if not entry or "=" not in entry:
            continue
        token, _, identity = entry.partition("=")
        subject, _, email = identity.partition(":")
        if token.strip() and subject.strip():
            tokens[token.strip()] = (subject.strip(), email.strip() or None)
    return tokens


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 3000
    public_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    data_dir: Optional[str] = None
    snapshot_limit: int = 100
    notify_from: str = "notifications@request-catcher.local"
    email_fail_rate: float = 0.0
    auth_tokens: dict[str, tuple[str, Optional[str]]] = field(default_factory=dict)


def load_settings() -> Settings:
    """Build Settings from environment variables with sensible defaults."""
    port = int(os.environ.get("PORT", Settings.port))
    # Catch-up snapshots never exceed MAX_SNAPSHOT_LIMIT records
    snapshot_limit = int(os.environ.get("SNAPSHOT_LIMIT", Settings.snapshot_limit))
    snapshot_limit = max(1, min(snapshot_limit, MAX_SNAPSHOT_LIMIT))
    log_level = os.environ.get("LOG_LEVEL", Settings.log_level).upper()
    if log_level not in LOG_LEVELS:
        log_level = Settings.log_level
    return Settings(
        host=os.environ.get("HOST", Settings.host),
        port=port,
        public_base_url=os.environ.get(
            "PUBLIC_BASE_URL", f"http://localhost:{port}"
        ).rstrip("/"),
        log_level=log_level,
        data_dir=os.environ.get("DATA_DIR") or None,
        snapshot_limit=snapshot_limit,
        notify_from=os.environ.get("NOTIFY_FROM", Settings.notify_from),
        email_fail_rate=float(os.environ.get("EMAIL_FAIL_RATE", Settings.email_fail_rate)),
        auth_tokens=_parse_tokens(os.environ.get("AUTH_TOKENS", "")),
    )
