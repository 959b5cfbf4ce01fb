"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Coordinator settings loaded from environment variables."""

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False
    auth_enabled: bool = True

    # Worker liveness
    stale_after_seconds: int = 60
    heartbeat_interval_ms: int = 30000
    health_check_interval_ms: int = 300000
    job_poll_interval_ms: int = 5000
    memory_baseline_mb: int = 3000

    # Scheduling loop
    scheduler_interval_seconds: float = 5.0
    timeout_sweep_enabled: bool = True

    # Messaging backend: "memory" or "redis"
    messaging_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "fleet:jobs"

    # Scenario generation
    openai_api_key: str | None = None
    gemini_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    gemini_model: str = "gemini-pro"
    generation_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "FLEET_"
        env_file = ".env"


settings = Settings()
