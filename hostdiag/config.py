from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic_settings import BaseSettings

if TYPE_CHECKING:  # pragma: no cover
    from hostdiag.scan.models import Tier


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Worker count per tier (overridable per run)
    concurrency_quick: int = 2
    concurrency_standard: int = 4
    concurrency_deep: int = 6

    # Total-run time budget per tier, in seconds
    budget_quick: float = 30.0
    budget_standard: float = 45.0
    budget_deep: float = 75.0
    budget_warning_ratio: float = 0.8

    # A single check is abandoned after this many seconds
    per_check_timeout: float = 120.0

    # Resilient query wrapper
    query_default_timeout: float = 10.0
    query_timeout_min: float = 5.0
    query_timeout_max: float = 300.0
    query_retry_window_days: int = 7

    # Optional YAML profile that re-tiers or disables checks
    profile_path: str = ""

    # Built-in checks
    powershell_path: str = "powershell.exe"
    connectivity_url: str = "http://www.msftconnecttest.com/connecttest.txt"
    dns_probe_host: str = "www.microsoft.com"

    # Logging
    log_level: str = "INFO"

    def concurrency_for(self, tier: Tier) -> int:
        return int(getattr(self, f"concurrency_{tier.value}"))

    def budget_for(self, tier: Tier) -> float:
        return float(getattr(self, f"budget_{tier.value}"))

    def budgets(self) -> dict[Tier, float]:
        from hostdiag.scan.models import Tier

        return {t: self.budget_for(t) for t in Tier}


settings = Settings()
