# settings.py
import os
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from errors import ConfigurationError

API_KEY_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "together": "TOGETHER_API_KEY",
}

DEFAULT_MODEL = "openrouter/mistralai/mistral-7b-instruct:free"
MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10MB
MAX_FILE_CHARS = 30_000


def _split_csv(raw: Optional[str]) -> List[str]:
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


class Settings(BaseModel):
    """
    Process-wide configuration, built once at startup and handed to the
    registry and adapters. Nothing downstream reads os.environ directly.
    """

    api_keys: Dict[str, str] = Field(default_factory=dict)
    site_url: str = "https://ai-agent.com"
    site_name: str = "AI Agent"
    allowed_origins: List[str] = Field(default_factory=list)
    default_model: str = DEFAULT_MODEL
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    max_file_chars: int = MAX_FILE_CHARS
    upstream_timeout: float = 60.0
    relay_mode: Literal["reframe", "passthrough"] = "reframe"
    environment: str = "development"
    log_level: str = "INFO"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        keys = {}
        for provider, env_name in API_KEY_ENV.items():
            value = (os.getenv(env_name) or "").strip()
            if value:
                keys[provider] = value

        relay_mode = (os.getenv("STREAM_RELAY_MODE") or "reframe").strip().lower()
        if relay_mode not in ("reframe", "passthrough"):
            raise ConfigurationError(
                f"STREAM_RELAY_MODE must be 'reframe' or 'passthrough', got {relay_mode!r}"
            )

        try:
            return cls(
                api_keys=keys,
                site_url=os.getenv("YOUR_SITE_URL") or "https://ai-agent.com",
                site_name=os.getenv("YOUR_SITE_NAME") or "AI Agent",
                allowed_origins=_split_csv(os.getenv("ALLOWED_ORIGINS")),
                default_model=(os.getenv("DEFAULT_MODEL") or DEFAULT_MODEL).strip(),
                max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES") or MAX_UPLOAD_BYTES),
                max_file_chars=int(os.getenv("MAX_FILE_CHARS") or MAX_FILE_CHARS),
                upstream_timeout=float(os.getenv("UPSTREAM_TIMEOUT_SECONDS") or 60.0),
                relay_mode=relay_mode,
                environment=os.getenv("NODE_ENV") or os.getenv("APP_ENV") or "development",
                log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
                port=int(os.getenv("PORT") or 8080),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

    @property
    def default_provider(self) -> str:
        return self.default_model.split("/", 1)[0].lower()

    def require_key(self, provider: str) -> str:
        key = self.api_keys.get(provider)
        if not key:
            env_name = API_KEY_ENV.get(provider, provider.upper() + "_API_KEY")
            raise ConfigurationError(f"Missing {env_name}: provider '{provider}' is not configured")
        return key

    def validate_required(self) -> None:
        """The default provider must be usable, otherwise refuse to start."""
        if "/" not in self.default_model:
            raise ConfigurationError(
                f"DEFAULT_MODEL must look like 'provider/model', got {self.default_model!r}"
            )
        if self.default_provider not in API_KEY_ENV:
            raise ConfigurationError(f"DEFAULT_MODEL names unknown provider '{self.default_provider}'")
        self.require_key(self.default_provider)
