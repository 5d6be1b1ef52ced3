"""REPLICATOR global configuration."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    env: str = "development"

    # Paths
    data_dir: Path = Path("./data")

    # Worker pool
    min_instances: int = 1
    max_instances: int = 10
    initial_instances: int = 2
    job_timeout_seconds: float = 600.0
    heartbeat_interval_seconds: float = 5.0
    heartbeat_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.5

    # Artifact store retries
    store_max_retries: int = 4
    store_backoff_seconds: float = 0.25
    store_backoff_max_seconds: float = 8.0

    # Monitoring
    metrics_interval_seconds: float = 60.0
    metrics_window_seconds: float = 900.0
    alert_queue_depth: int = 1000
    alert_error_rate: float = 0.05
    alert_latency_seconds: float = 30.0

    # Queue transport: "memory" or "cloudflare"
    transport: Literal["memory", "cloudflare"] = "memory"
    cloudflare_account_id: str = ""
    cloudflare_queue_id: str = ""
    cloudflare_api_token: str = ""

    # Engine result cache (0 disables)
    engine_cache_size: int = 32

    model_config = {"env_prefix": "REPLICATOR_"}

    @property
    def ledger_path(self) -> Path:
        return self.data_dir / "jobs.json"

    @property
    def generations_path(self) -> Path:
        return self.data_dir / "generations.json"

    @property
    def artifacts_dir(self) -> Path:
        return self.data_dir / "artifacts"


settings = Settings()
