"""Application configuration via Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./riderescue.db"

    # Geocoding
    google_maps_api_key: str = ""

    # Visibility gate: age-based public release OR proximity
    visibility_age_threshold_minutes: float = 10.0
    visibility_distance_threshold_km: float = 2.0

    # Fallback polling for missed change-stream events
    refresh_interval_seconds: float = 15.0

    # Fees (decimal major units at the boundary)
    rate_per_km: Decimal = Decimal("15.00")
    minimum_billable_km: float = 1.0
    default_labor_cost: Decimal = Decimal("50.00")
    max_labor_cost: Decimal = Decimal("999999")
    max_extra_items: int = 10
    max_note_length: int = 500

    # Comma-separated service categories that never carry a cancellation fee
    zero_fee_categories: str = "gas"

    # Location
    location_max_age_seconds: float = 60.0

    # Per-provider coordinators held by the API process
    max_coordinators: int = 500
    coordinator_idle_seconds: float = 1800.0

    # CORS / Frontend
    cors_origins: str = "http://localhost:8081"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin (LAN IPs, etc.).
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def zero_fee_category_set(self) -> frozenset[str]:
        return frozenset(
            c.strip().lower() for c in self.zero_fee_categories.split(",") if c.strip()
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
