"""Application configuration via environment variables."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings

log = logging.getLogger("intake.config")

_DEFAULT_CATEGORIES = (
    Path(__file__).resolve().parent.parent / "data" / "categories" / "legal_practice_areas.jsonl"
)

DEFAULT_TCPA_TEXT = (
    "By submitting this request, I agree to be contacted by a participating "
    "attorney or law firm at the phone number and email provided, including "
    "by autodialed calls and text messages. Consent is not a condition of "
    "any purchase or service."
)


class Settings(BaseSettings):
    # LLM
    llm_provider: str = "claude"
    anthropic_api_key: str = ""
    llm_model: str = "claude-haiku-4-5-20251001"
    llm_max_tokens: int = 600
    ai_timeout_seconds: float = 10.0

    # Category configuration
    categories_path: str = str(_DEFAULT_CATEGORIES)
    config_cache_ttl_seconds: float = 300.0

    # Sessions
    session_backend: str = "memory"  # "memory" or "sqlite"
    database_path: str = "data/intake_sessions.db"
    session_ttl_days: int = 7
    submission_claim_timeout_seconds: float = 120.0

    # Geocoding
    google_maps_api_key: str = ""
    geocode_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    geocode_timeout_seconds: float = 5.0

    # Lead marketplace
    leadprosper_url: str = "https://api.leadprosper.io/direct_post"
    marketplace_timeout_seconds: float = 15.0
    tcpa_text: str = DEFAULT_TCPA_TEXT

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def session_ttl_seconds(self) -> float:
        return self.session_ttl_days * 24 * 60 * 60

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-ant-...", "your-google-maps-key", "changeme"}

        if self.session_backend not in ("memory", "sqlite"):
            raise ValueError(
                f"SESSION_BACKEND must be 'memory' or 'sqlite', got {self.session_backend!r}."
            )

        # LLM key: optional, detection and extraction degrade to keywords/regex
        if self.llm_provider == "claude":
            if self.anthropic_api_key in _placeholders:
                raise ValueError(
                    "ANTHROPIC_API_KEY is still a placeholder. "
                    "Set it in .env or leave it empty to run without AI."
                )
            if not self.anthropic_api_key:
                warnings.append(
                    "ANTHROPIC_API_KEY not set. Category detection and field "
                    "extraction will use keyword/regex matching only."
                )

        if not self.google_maps_api_key or self.google_maps_api_key in _placeholders:
            warnings.append(
                "GOOGLE_MAPS_API_KEY not set. City/state will be asked instead of looked up."
            )

        # Admin API key: warn if unset
        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        return warnings


settings = Settings()
