import os
import signal
import logging
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from attendance_notifier.core import NotificationCore
from attendance_notifier.api import create_app

# Configure logging level from environment
log_level = os.getenv("ATN_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with ATN_):
      ATN_CONFIG - Path to config.ini file (default: config.ini)
      ATN_LOG_LEVEL - Logging level (default: INFO)
      ATN_DB_PATH - Database path (default: /data/attendance_notifier.db)
      ATN_HOST - Server host (default: 0.0.0.0)
      ATN_PORT - Server port (default: 8000)
      ATN_API_TOKEN - API authentication token
      ATN_BRIDGE_URL - WebSocket URL of the WhatsApp bridge (default: ws://127.0.0.1:8765)
      ATN_AUTH_DIR - Credential directory (default: auth_info_baileys)
      ATN_QR_IMAGE_PATH - Where the pairing QR image is written (default: qr.png)
      ATN_COUNTRY_CODE - Country code replacing a leading 0 (default: 62)
      ATN_POLL_INTERVAL - Seconds between queue polls (default: 2)
      ATN_MIN_DELAY / ATN_MAX_DELAY - Pause window between sends (default: 1 / 3)
      ATN_RECLAIM_INTERVAL - Seconds between stuck-job sweeps (default: 300)
      ATN_STUCK_TIMEOUT - Seconds before a processing job is reset (default: 300)
      ATN_TIMEZONE - School timezone (default: Asia/Jakarta)
      ATN_DAILY_CHECK_INTERVAL - Seconds between daily report checks (default: 300)
      ATN_MONTHLY_CHECK_INTERVAL - Seconds between month-end checks (default: 3600)
      ATN_MONTHLY_RECAP_HOUR - Hour of the last day when the recap runs (default: 20)
      ATN_LOG_DELIVERY_ACTIVITY - Log delivery activity (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [whatsapp] bridge_url, auth_dir, qr_image_path, country_code
      [delivery] poll_interval_seconds, min_delay_seconds, max_delay_seconds
      [maintenance] reclaim_interval_seconds, stuck_timeout_seconds
      [reports] timezone, daily_check_seconds, monthly_check_seconds, monthly_recap_hour
      [logging] delivery_activity
    """
    config_path = Path(os.getenv("ATN_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("ATN_DB_PATH", "/data/attendance_notifier.db")),
        "http_host": get("server", "host", os.getenv("ATN_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("ATN_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("ATN_API_TOKEN")),
        "bridge_url": get("whatsapp", "bridge_url", os.getenv("ATN_BRIDGE_URL", "ws://127.0.0.1:8765")),
        "auth_dir": get("whatsapp", "auth_dir", os.getenv("ATN_AUTH_DIR", "auth_info_baileys")),
        "qr_image_path": get("whatsapp", "qr_image_path", os.getenv("ATN_QR_IMAGE_PATH", "qr.png")),
        "country_code": get("whatsapp", "country_code", os.getenv("ATN_COUNTRY_CODE", "62")),
        "poll_interval": get_float("delivery", "poll_interval_seconds", os.getenv("ATN_POLL_INTERVAL"), 2.0),
        "min_delay": get_float("delivery", "min_delay_seconds", os.getenv("ATN_MIN_DELAY"), 1.0),
        "max_delay": get_float("delivery", "max_delay_seconds", os.getenv("ATN_MAX_DELAY"), 3.0),
        "reclaim_interval": get_float(
            "maintenance", "reclaim_interval_seconds", os.getenv("ATN_RECLAIM_INTERVAL"), 300.0
        ),
        "stuck_timeout": get_int("maintenance", "stuck_timeout_seconds", os.getenv("ATN_STUCK_TIMEOUT"), 300),
        "timezone": get("reports", "timezone", os.getenv("ATN_TIMEZONE", "Asia/Jakarta")),
        "daily_check_interval": get_float(
            "reports", "daily_check_seconds", os.getenv("ATN_DAILY_CHECK_INTERVAL"), 300.0
        ),
        "monthly_check_interval": get_float(
            "reports", "monthly_check_seconds", os.getenv("ATN_MONTHLY_CHECK_INTERVAL"), 3600.0
        ),
        "monthly_recap_hour": get_int("reports", "monthly_recap_hour", os.getenv("ATN_MONTHLY_RECAP_HOUR"), 20),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("ATN_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    for key in ("db_path", "auth_dir", "qr_image_path"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def build_service(settings: dict[str, object]) -> NotificationCore:
    def terminate():
        # Credentials are gone; the operator must restart and pair again.
        os.kill(os.getpid(), signal.SIGTERM)

    return NotificationCore(
        db_path=settings["db_path"],
        bridge_url=str(settings["bridge_url"]),
        auth_dir=str(settings["auth_dir"]),
        qr_image_path=settings.get("qr_image_path"),
        country_code=str(settings["country_code"]),
        timezone=str(settings["timezone"]),
        poll_interval=float(settings["poll_interval"]),
        min_delay=float(settings["min_delay"]),
        max_delay=float(settings["max_delay"]),
        reclaim_interval=float(settings["reclaim_interval"]),
        stuck_timeout=int(settings["stuck_timeout"]),
        daily_check_interval=float(settings["daily_check_interval"]),
        monthly_check_interval=float(settings["monthly_check_interval"]),
        monthly_recap_hour=int(settings["monthly_recap_hour"]),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
        on_logged_out=terminate,
    )


if __name__ == "__main__":
    settings = load_settings()
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop(logout=True)

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
