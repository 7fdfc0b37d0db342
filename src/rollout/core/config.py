from typing import Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "rollout-controller"
    VERSION: str = "0.1.0"

    # Environment
    ENV: str = "dev"  # dev, staging, production
    DEBUG: bool = False

    # Monitoring defaults
    MONITORING_DURATION: float = 30  # minutes
    CHECK_INTERVAL: float = 30  # seconds
    EVALUATION_PERIOD: float = 60  # minutes

    # Probed endpoints (name -> path, joined onto BASE_URL)
    BASE_URL: str = "https://widget.passwordless-otp.com"
    CANARY_ENDPOINTS: Dict[str, str] = {
        "Health Check": "/health",
        "API Status": "/api/status",
        "Auth Check": "/api/auth/check",
    }
    PRODUCTION_ENDPOINTS: Dict[str, str] = {
        "Homepage": "/",
        "Health Check": "/health",
        "API Status": "/api/status",
        "Auth Check": "/api/auth/check",
    }

    # Metrics backend: auto, datadog, prometheus, simulated
    METRICS_BACKEND: str = "auto"
    METRIC_PREFIX: str = "widget"
    DATADOG_API_KEY: Optional[str] = None
    DATADOG_APP_KEY: Optional[str] = None
    DATADOG_SITE: str = "https://api.datadoghq.com"
    PROMETHEUS_URL: Optional[str] = None
    BACKEND_TIMEOUT: float = 10.0

    # Collaborators
    SLACK_WEBHOOK_URL: Optional[str] = None
    FIREBASE_BIN: str = "firebase"
    FIREBASE_PROJECT: Optional[str] = None
    FIREBASE_SITE: Optional[str] = None
    PUSHGATEWAY_URL: Optional[str] = None

    # Local state
    LEDGER_PATH: str = ".deployment-record.json"
    BACKUPS_DIR: str = "backups"
    LOG_DIR: Optional[str] = "logs"
    REPORTS_DIR: Optional[str] = "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    def endpoints_for(self, kind: str) -> List[Tuple[str, str]]:
        """Return (name, url) pairs probed for a deployment kind."""
        paths = self.CANARY_ENDPOINTS if kind == "canary" else self.PRODUCTION_ENDPOINTS
        base = self.BASE_URL.rstrip("/")
        return [(name, f"{base}{path}") for name, path in paths.items()]
