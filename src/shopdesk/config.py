from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import sys


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    fx_api_key: str = ""
    fx_ttl_seconds: int = 3600
    fx_retries: int = 2
    fx_backoff_seconds: float = 0.5
    display_currency: str = "TRY"
    allow_negative_stock: bool = True
    warranty_lookahead_days: int = 7
    report_months: int = 6


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "ShopDesk") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "shopdesk.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def load_settings(env: dict[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env

    def get(name: str, default: str) -> str:
        value = env.get(name, "")
        return value.strip() if value and value.strip() else default

    allow_negative = get("SHOPDESK_ALLOW_NEGATIVE_STOCK", "true").lower() in {"1", "true", "yes", "on"}
    return Settings(
        fx_api_key=get("SHOPDESK_FX_API_KEY", get("OPENEXCHANGE_API_KEY", "")),
        fx_ttl_seconds=int(get("SHOPDESK_FX_TTL_SECONDS", "3600")),
        fx_retries=int(get("SHOPDESK_FX_RETRIES", "2")),
        fx_backoff_seconds=float(get("SHOPDESK_FX_BACKOFF_SECONDS", "0.5")),
        display_currency=get("SHOPDESK_DISPLAY_CURRENCY", "TRY").upper(),
        allow_negative_stock=allow_negative,
        warranty_lookahead_days=int(get("SHOPDESK_WARRANTY_LOOKAHEAD_DAYS", "7")),
        report_months=int(get("SHOPDESK_REPORT_MONTHS", "6")),
    )
