from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings

APP_VERSION = "0.1.0"

# The in-memory store is per process; anywhere else sessions must be shared.
LOCAL_ENVIRONMENTS = frozenset({"development", "test"})


class Settings(BaseSettings):
    model_config = {
        "env_file": "../.env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # Polar (payment provider)
    polar_access_token: str = ""
    polar_product_id: str = ""
    polar_sandbox: bool = False
    polar_webhook_secret: str = ""
    # Only honoured when polar_webhook_secret is empty. Development use only.
    allow_unsigned_webhooks: bool = False
    checkout_timeout_seconds: float = 15.0

    # Credential store
    credential_store: Literal["redis", "memory", "none"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    session_ttl_seconds: int = 86_400
    enforce_single_use: bool = True
    # Lets /api/analyze run without any payment check when credential_store is "none".
    allow_unpaid_analysis: bool = False

    # OpenAI (vision provider)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 8000
    analysis_timeout_seconds: float = 120.0
    analysis_max_retries: int = 0

    # App
    app_url: str = ""
    environment: str = "development"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _require_shared_store(self) -> "Settings":
        if self.credential_store == "memory" and self.environment not in LOCAL_ENVIRONMENTS:
            raise ValueError(
                f"CREDENTIAL_STORE=memory is not allowed in environment {self.environment!r}; "
                "use redis (or none for a storeless demo)"
            )
        return self

    @property
    def polar_api_base(self) -> str:
        return "https://sandbox-api.polar.sh" if self.polar_sandbox else "https://api.polar.sh"

    @property
    def store_configured(self) -> bool:
        return self.credential_store != "none"
