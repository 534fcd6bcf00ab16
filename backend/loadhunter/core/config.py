"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    log_json: bool = False
    app_mode: str = "demo"

    # Leave empty by default; DispatchStateStore derives the sqlite path
    # from OPS_STATE_PATH when explicit OPS_DB_PATH is not provided.
    ops_db_path: str = ""
    ops_state_path: str = "./data/dispatch_state.json"

    # Tenancy
    auth_enabled: bool = False
    default_tenant_id: str = "demo"
    tenant_tokens: str = ""
    platform_admin_tokens: str = ""

    # Matching
    default_pickup_radius_miles: float = 200.0
    match_expiry_fallback_hours: float = 2.0
    match_counts_cache_seconds: float = 15.0

    # Booking
    load_number_prefix: str = "LH"
    booking_sequence_max_retries: int = 5
    default_truck_type: str = "my_truck"

    # Invoicing
    invoice_payment_terms_days: int = 30
    # Returning an invoice to audit never touches loads.status unless enabled.
    reversal_restores_operational_status: bool = False
    reversal_restored_status: str = "ready_for_audit"

    def resolved_db_path(self) -> Path:
        db_path = (self.ops_db_path or "").strip()
        if db_path:
            return Path(db_path)
        return Path(self.ops_state_path).with_suffix(".db")

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"

    def is_demo_mode(self) -> bool:
        return self.normalized_app_mode() == "demo"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
