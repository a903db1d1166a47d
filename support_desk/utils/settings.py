from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_PATH = REPO_ROOT / ".env"
DEFAULT_DATA_DIR = Path("assets/data")
DEFAULT_DEV_SECRET = "dev-support-desk-secret"


@lru_cache(maxsize=1)
def load_env_file(dotenv_path: str | Path | None = None) -> bool:
    """Load environment variables from a .env file exactly once per process."""

    path: Path | None
    if dotenv_path is None:
        path = DEFAULT_ENV_PATH if DEFAULT_ENV_PATH.exists() else None
    else:
        path = Path(dotenv_path)
    return load_dotenv(dotenv_path=path, override=False)


def _read_int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = (os.getenv(name, str(default)) or str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _read_float_env(name: str, default: float, minimum: float = 0.0) -> float:
    raw = (os.getenv(name, str(default)) or str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _read_list_env(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default) or ""
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


@dataclass(frozen=True)
class Settings:
    project_name: str = "Customer Support Platform API"
    api_prefix: str = "/v1"
    data_dir: Path = DEFAULT_DATA_DIR
    database_path: Path = DEFAULT_DATA_DIR / "support_desk.sqlite"
    jwt_secret: str = DEFAULT_DEV_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])
    customer_can_reopen_resolved: bool = True
    api_rate_limit: int = 120
    api_rate_window: int = 60
    admin_emails: List[str] = field(default_factory=list)
    ws_send_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "Settings":
        load_env_file()
        data_dir = Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
        database_raw = os.getenv("DATABASE_PATH", "").strip()
        database_path = Path(database_raw) if database_raw else data_dir / "support_desk.sqlite"
        return cls(
            project_name=os.getenv("PROJECT_NAME", cls.project_name),
            data_dir=data_dir,
            database_path=database_path,
            jwt_secret=(os.getenv("JWT_SECRET", "") or "").strip() or DEFAULT_DEV_SECRET,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            access_token_expire_minutes=_read_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
            cors_origins=_read_list_env("CORS_ALLOW_ORIGINS", "http://localhost:5173"),
            customer_can_reopen_resolved=_read_bool_env("CUSTOMER_CAN_REOPEN_RESOLVED", True),
            api_rate_limit=_read_int_env("API_RATE_LIMIT", 120),
            api_rate_window=_read_int_env("API_RATE_WINDOW", 60),
            admin_emails=[email.lower() for email in _read_list_env("ADMIN_EMAILS")],
            ws_send_timeout_seconds=_read_float_env("WS_SEND_TIMEOUT_SECONDS", 5.0, minimum=0.01),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    global _SETTINGS
    _SETTINGS = None
