"""
Risk Engine Configuration

Pydantic-based settings with environment variable support (prefix TOSS_).
"""

from decimal import Decimal
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from riskcore.config import FaultWeights, RiskConfig
from riskcore.oracle import PriceCacheConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TOSS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ==========================================================================
    # APPLICATION
    # ==========================================================================
    app_name: str = "TOSS Risk Engine"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # ==========================================================================
    # API
    # ==========================================================================
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: List[str] = Field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:8000"
    ])

    # ==========================================================================
    # GENESIS RISK CONFIG (version 1; later versions come from governance)
    # ==========================================================================
    weight_limit: int = 30
    weight_behavior: int = 20
    weight_damage: int = 30
    weight_intent: int = 20
    gamma: int = 80
    alpha: Decimal = Decimal("1.0")
    min_slashing_fi: int = 30
    ban_threshold_fi: int = 85
    warning_fi: int = 10

    # ==========================================================================
    # ORACLE CACHE
    # ==========================================================================
    oracle_fresh_seconds: float = 60.0
    oracle_max_staleness_seconds: float = 900.0
    oracle_decay_bps_per_minute: Decimal = Decimal(10)
    oracle_max_discount_bps: Decimal = Decimal(500)
    oracle_min_confidence: Decimal = Decimal(80)
    oracle_fetch_timeout_seconds: float = 0.5
    toss_asset: str = "TOSS"

    # ==========================================================================
    # OPERATION LIMITS
    # ==========================================================================
    base_max_deposit_usd: Decimal = Decimal(1_000_000)
    asset_whitelist: List[str] = Field(default_factory=lambda: ["ETH", "BTC", "USDC", "SOL"])
    max_price_deviation_bps: Decimal = Decimal(200)

    # ==========================================================================
    # AUDIT & SESSIONS
    # ==========================================================================
    audit_enabled: bool = True
    audit_path: str = "./data/audit"
    audit_fail_closed: bool = True
    require_sessions: bool = False
    session_ttl_minutes: int = 60

    # ==========================================================================
    # HELPERS
    # ==========================================================================
    def to_risk_config(self) -> RiskConfig:
        """Genesis snapshot. Raises PreconditionError on out-of-bound values."""
        return RiskConfig(
            version=1,
            weights=FaultWeights(
                limit=self.weight_limit,
                behavior=self.weight_behavior,
                damage=self.weight_damage,
                intent=self.weight_intent,
            ),
            gamma=self.gamma,
            alpha=self.alpha,
            min_slashing_fi=self.min_slashing_fi,
            ban_threshold_fi=self.ban_threshold_fi,
            warning_fi=self.warning_fi,
        )

    def to_price_cache_config(self) -> PriceCacheConfig:
        return PriceCacheConfig(
            fresh_seconds=self.oracle_fresh_seconds,
            max_staleness_seconds=self.oracle_max_staleness_seconds,
            decay_bps_per_minute=self.oracle_decay_bps_per_minute,
            max_discount_bps=self.oracle_max_discount_bps,
            min_confidence=self.oracle_min_confidence,
            fetch_timeout_seconds=self.oracle_fetch_timeout_seconds,
        )

    # ==========================================================================
    # PROPERTIES
    # ==========================================================================
    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def audit_dir(self) -> Path:
        return Path(self.audit_path)


# Global settings instance
settings = Settings()
