"""
Environment-driven settings.

Values are read once when main is imported (main.SETTINGS) and handed to the
clients that need them. Nothing here is mutated afterwards.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_str(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    # Inference
    llm_provider: str = "openrouter"
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "nvidia/nemotron-nano-12b-v2-vl:free"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    llm_max_retries: int = 0
    llm_timeout_seconds: float = 120.0

    # Telegram launcher
    telegram_bot_token: Optional[str] = None
    telegram_init_data_max_age: int = 0

    # Auth / persistence
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_key: Optional[str] = None
    signup_bonus_credits: int = 0

    # Payments
    helius_api_key: Optional[str] = None
    receiver_wallet_address: Optional[str] = None
    cost_per_analysis_sol: float = 0.01
    payment_window_seconds: int = 120

    # HTTP
    max_upload_mb: int = 10
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 3000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            llm_provider=(os.getenv("LLM_PROVIDER", "openrouter").strip().lower() or "openrouter"),
            openrouter_api_key=_env_str("OPENROUTER_API_KEY"),
            openrouter_model=os.getenv("OPENROUTER_MODEL", cls.openrouter_model),
            gemini_api_key=_env_str("GEMINI_API_KEY") or _env_str("LLM_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            llm_max_retries=_env_int("LLM_MAX_RETRIES", 0),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 120.0),
            telegram_bot_token=_env_str("TELEGRAM_BOT_TOKEN"),
            telegram_init_data_max_age=_env_int("TELEGRAM_INIT_DATA_MAX_AGE", 0),
            supabase_url=_env_str("SUPABASE_URL"),
            supabase_anon_key=_env_str("SUPABASE_ANON_KEY"),
            supabase_service_key=_env_str("SUPABASE_SERVICE_KEY"),
            signup_bonus_credits=_env_int("SIGNUP_BONUS_CREDITS", 0),
            helius_api_key=_env_str("HELIUS_API_KEY"),
            receiver_wallet_address=_env_str("RECEIVER_WALLET_ADDRESS"),
            cost_per_analysis_sol=_env_float("COST_PER_ANALYSIS_SOL", 0.01),
            payment_window_seconds=_env_int("PAYMENT_WINDOW_SECONDS", 120),
            max_upload_mb=_env_int("MAX_UPLOAD_MB", 10),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()] or ["*"],
            port=_env_int("PORT", 3000),
        )

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024
