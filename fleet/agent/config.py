"""Worker agent configuration."""

from pydantic_settings import BaseSettings

from fleet.models.worker import WorkerType


class AgentSettings(BaseSettings):
    """Settings of a worker agent, loaded from environment variables."""

    # Master
    master_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 30.0

    # Identity; worker_id/api_key reuse an existing registration
    worker_name: str | None = None
    worker_type: WorkerType = WorkerType.VPS
    worker_ip: str | None = None
    worker_port: int | None = None
    worker_id: str | None = None
    api_key: str | None = None
    region: str | None = None

    # Capabilities
    max_concurrent_jobs: int = 2
    memory_mb: int = 2048
    cpu_cores: int = 2
    storage_gb: int = 20

    # Loops
    heartbeat_interval_ms: int = 30000
    poll_interval_ms: int = 5000

    # Chrome/Chromium settings
    chrome_binary: str = "/usr/bin/chromium"
    chrome_user_data_base: str = "/tmp/fleet-chrome-profiles"
    devtools_port_base: int = 9222
    headless: bool = True
    page_load_timeout_seconds: float = 30.0

    class Config:
        env_prefix = "FLEET_AGENT_"
        env_file = ".env"


agent_settings = AgentSettings()
