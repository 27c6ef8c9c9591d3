from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv

from reader_sync.providers.readwise import READWISE_BASE_URL


class ConfigError(RuntimeError):
    """Required configuration is missing or invalid."""


def resolve_db_path(database_url: str) -> str:
    """Turn DATABASE_URL into a sqlite3 path.

    Accepts `sqlite:///relative.db`, `sqlite:////abs/path.db`,
    `sqlite:///:memory:` or a bare file path.
    """
    url = database_url.strip()
    if url.startswith("sqlite:///"):
        path = url[len("sqlite:///"):]
    elif "://" in url:
        raise ConfigError(f"Unsupported DATABASE_URL scheme: {url.split('://', 1)[0]}")
    else:
        path = url
    if not path:
        raise ConfigError("DATABASE_URL does not contain a database path")
    return path


@dataclass(frozen=True)
class Settings:
    readwise_token: str
    db_path: str
    log_level: str
    readwise_base_url: str
    http_timeout: float

    @staticmethod
    def from_env(*, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        def _required(name: str) -> str:
            value = os.getenv(name, "").strip()
            if not value:
                raise ConfigError(f"Missing required environment variable: {name}")
            return value

        def _f(name: str, default: str) -> float:
            raw = os.getenv(name, default).strip()
            try:
                return float(raw)
            except ValueError:
                raise ConfigError(f"{name} must be a number, got {raw!r}") from None

        return Settings(
            readwise_token=_required("READWISE_ACCESS_TOKEN"),
            db_path=resolve_db_path(_required("DATABASE_URL")),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            readwise_base_url=os.getenv("READWISE_BASE_URL", READWISE_BASE_URL).strip(),
            http_timeout=_f("HTTP_TIMEOUT", "30"),
        )
