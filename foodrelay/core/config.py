# foodrelay/core/config.py
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # storage
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "foodrelay"
    use_mongo: bool = False

    # auth context
    jwt_secret: str = "dev"
    jwt_alg: str = "HS256"

    # distance provider (no key -> straight-line fallback)
    google_maps_api_key: Optional[str] = None
    distance_timeout_s: float = 5.0
    fallback_speed_mps: float = 13.0

    # supervisor
    supervisor_enabled: bool = True
    public_url: Optional[str] = None
    stall_interval_min: float = 5
    expiry_interval_min: float = 15
    escalation_interval_min: float = 2
    heartbeat_interval_min: float = 14

    log_level: str = "INFO"

    # dispatch tunables
    ngo_radius_km: float = 15.0
    volunteer_radius_km: float = 10.0
    escalation_radius_km: float = 20.0
    escalation_top_n: int = 3
    escalation_claim_age_min: float = 5
    max_volunteer_candidates: int = 10
    heartbeat_timeout_min: float = 15
    eta_grace_min: float = 20
    diversion_radius_km: float = 5.0
    min_safety_margin_h: float = 2.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
