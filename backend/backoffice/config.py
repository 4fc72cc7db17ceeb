"""
backend/backoffice/config.py

Purpose:
    Central settings loading for the back-office services.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "backoffice"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"

    # Upstream exchange API
    EXCHANGE_BASE_URL: str = "http://3.6.84.17/exchange/api.php"
    EXCHANGE_TIMEOUT_SECONDS: float = 15.0

    # Shared secret for the on-demand sync trigger (empty disables the endpoint)
    SYNC_API_KEY: str = ""

    # Catalog sync (sports -> competitions -> events)
    CATALOG_SYNC_ENABLED: bool = False
    CATALOG_SYNC_INTERVAL_MINUTES: int = 30

    # Live market broadcast
    MARKET_BROADCAST_INTERVAL_SECONDS: float = 2.0
    MARKET_SWEEP_INTERVAL_SECONDS: float = 10.0  # upper bound on empty-room polling

    # WebSocket realtime stream
    WS_MAX_CONNECTIONS: int = 500
    WS_HEARTBEAT_SECONDS: int = 30

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()
