"""Runtime settings for medorders, read from the environment."""

import os
from dataclasses import dataclass, field
from pathlib import Path

# Local data directory within the medorders project
# Can be overridden via MEDORDERS_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"

# `medorders serve` refuses to start with this secret
DEFAULT_TOKEN_SECRET = "dev-secret"

DEFAULT_CORS_ORIGINS = [
    "http://localhost:8081",
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:8081",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


@dataclass
class Settings:
    data_dir: Path = _default_data_dir
    token_secret: str = DEFAULT_TOKEN_SECRET
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    currency: str = "INR"
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.environ.get("MEDORDERS_CORS_ORIGINS")
        return cls(
            data_dir=Path(os.environ.get("MEDORDERS_DATA_DIR", _default_data_dir)),
            token_secret=os.environ.get("MEDORDERS_TOKEN_SECRET", DEFAULT_TOKEN_SECRET),
            razorpay_key_id=os.environ.get("RAZORPAY_API_KEY", ""),
            razorpay_key_secret=os.environ.get("RAZORPAY_API_SECRET", ""),
            razorpay_webhook_secret=os.environ.get("RAZORPAY_WEBHOOK_SECRET", ""),
            razorpay_base_url=os.environ.get("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1"),
            currency=os.environ.get("MEDORDERS_CURRENCY", "INR"),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins
                else list(DEFAULT_CORS_ORIGINS)
            ),
            log_level=os.environ.get("MEDORDERS_LOG_LEVEL", "INFO").upper(),
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them from the environment once."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
