"""Runtime configuration resolved from the environment."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

import structlog
from platformdirs import user_data_dir

APP_NAME = "bedboard"

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for the roster service."""

    database_url: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"
    stream_min_interval: float = 0.0
    echo_sql: bool = False

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo_sql}
        connect_args: Dict[str, object] = {}
        pool_size = _get_int_env("DB_POOL_SIZE")
        if pool_size is not None:
            options["pool_size"] = pool_size
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
        elif self.is_postgres:
            connect_timeout = _get_int_env("PGCONNECT_TIMEOUT")
            if connect_timeout is not None:
                connect_args["connect_timeout"] = connect_timeout
            connect_args["options"] = "-c timezone=UTC"
        if connect_args:
            options["connect_args"] = connect_args
        return options

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.database_url.startswith("postgresql") or self.database_url.startswith("postgres")


def _default_sqlite_path() -> Path:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "providers.db"


def _normalise_sqlite_path(path: str | os.PathLike[str]) -> Path:
    resolved = Path(path).expanduser()
    if resolved.is_dir():
        resolved = resolved / "providers.db"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def _resolve_database_url() -> str:
    url = os.getenv("BEDBOARD_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return url
    path_override = os.getenv("BEDBOARD_DB_PATH")
    if path_override:
        db_path = _normalise_sqlite_path(path_override)
    else:
        db_path = _default_sqlite_path()
    return f"sqlite:///{db_path}"


def _resolve_jwt_secret() -> str:
    secret = os.getenv("BEDBOARD_JWT_SECRET")
    if secret:
        return secret
    logger.warning("jwt_secret_generated", reason="BEDBOARD_JWT_SECRET not set")
    return secrets.token_urlsafe(48)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    return Settings(
        database_url=_resolve_database_url(),
        jwt_secret=_resolve_jwt_secret(),
        jwt_algorithm=os.getenv("BEDBOARD_JWT_ALGORITHM", "HS256"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        stream_min_interval=_get_float_env("BEDBOARD_STREAM_MIN_INTERVAL", 0.0),
        echo_sql=os.getenv("BEDBOARD_ECHO_SQL", "").strip().lower() in {"1", "true", "yes"},
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
