"""Process configuration read once from the environment."""

import os
from dataclasses import dataclass, field

LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str = field(default="")
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    health_port: int = 8081
    api_port: int = 8080
    log_format: str = "json"
    score_concurrency: int = 4
    unit_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if not self.listen_database_url:
            object.__setattr__(self, "listen_database_url", self.database_url)
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=os.environ.get("PULSE_WORKER_LISTEN_DATABASE_URL", database_url),
            poll_interval_seconds=float(os.environ.get("PULSE_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("PULSE_BATCH_SIZE", "10")),
            health_port=int(os.environ.get("PULSE_HEALTH_PORT", "8081")),
            api_port=int(os.environ.get("PULSE_API_PORT", "8080")),
            log_format=os.environ.get("PULSE_LOG_FORMAT", "json"),
            score_concurrency=max(1, int(os.environ.get("PULSE_SCORE_CONCURRENCY", "4"))),
            unit_timeout_seconds=float(os.environ.get("PULSE_UNIT_TIMEOUT_SECONDS", "30")),
        )
