"""
Configuration settings for the PlanIt planning core.

This module handles application configuration using Pydantic settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings."""
    
    # Application
    app_name: str = "PlanIt Planning Core"
    debug: bool = False
    log_level: str = "INFO"
    
    # Backend API
    api_base_url: str = "http://localhost:5000"
    api_token: Optional[str] = None
    request_timeout_seconds: float = 10.0
    
    # Cross-tab synchronization
    sync_channel_name: str = "tms_state_sync"
    sync_backend: str = "local"  # local or redis
    sync_debounce_ms: int = 300
    assignment_refresh_min_interval_ms: int = 500
    
    # Redis Configuration
    redis_url: str = "redis://localhost:6379/0"
    redis_decode_responses: bool = True
    
    # Refresh behaviour
    auto_refresh_interval_seconds: float = 30.0
    refresh_cooldown_seconds: float = 0.5
    auto_refresh_default: bool = True
    auto_refresh_preference_key: str = "planit_autoRefreshEnabled"
    
    # Planning board
    new_order_status: str = "new"
    unassigned_zone_id: str = "orders"
    draggable_order_prefix: str = "order-"
    run_zone_prefix: str = ""
    
    class Config:
        env_file = ".env"
        env_prefix = "PLANIT_"
        case_sensitive = False


settings = Settings()
