import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigError

load_dotenv()

DEFAULT_ORIGINS = ["http://localhost:5173"]
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    access_password: Optional[str] = None
    teacher_password: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-5.2"
    openai_timeout: float = 120.0
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ORIGINS))
    rate_limit_window: float = 60.0
    rate_limit_max_requests: int = 10
    rate_limit_cleanup_every: int = 100
    rate_limit_stale_factor: int = 5
    client_ip_header: str = "CF-Connecting-IP"
    results_store_dir: Optional[str] = None
    log_level: str = "INFO"
    port: int = 7860

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from the environment. Never raises for missing secrets."""
        return cls(
            access_password=os.getenv("ACCESS_PASSWORD") or None,
            teacher_password=os.getenv("TEACHER_PASSWORD") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-5.2"),
            openai_timeout=float(os.getenv("OPENAI_TIMEOUT", "120")),
            allowed_origins=_split_csv(os.getenv("ALLOWED_ORIGINS")) or list(DEFAULT_ORIGINS),
            rate_limit_window=float(os.getenv("RATE_LIMIT_WINDOW", "60")),
            rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "10")),
            rate_limit_cleanup_every=int(os.getenv("RATE_LIMIT_CLEANUP_EVERY", "100")),
            rate_limit_stale_factor=int(os.getenv("RATE_LIMIT_STALE_FACTOR", "5")),
            client_ip_header=os.getenv("CLIENT_IP_HEADER", "CF-Connecting-IP"),
            results_store_dir=os.getenv("RESULTS_STORE_DIR") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            port=int(os.getenv("PORT", "7860")),
        )

    # Secrets fail closed: no built-in fallback passwords.
    def require_access_password(self) -> str:
        if not self.access_password:
            raise ConfigError("Server misconfigured: ACCESS_PASSWORD is not set.")
        return self.access_password

    def require_teacher_password(self) -> str:
        if not self.teacher_password:
            raise ConfigError("Server misconfigured: TEACHER_PASSWORD is not set.")
        return self.teacher_password

    def require_openai_key(self) -> str:
        if not self.openai_api_key:
            raise ConfigError("Server misconfigured: OPENAI_API_KEY is not set.")
        return self.openai_api_key


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, level.upper(), logging.INFO))
