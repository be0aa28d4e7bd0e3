from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_START_METHODS = {"spawn", "forkserver", "fork"}
SUPPORTED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CARAML_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "CaraML Playground"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    database_token_command: str | None = None
    database_token_ttl_seconds: PositiveInt = 3600

    artifacts_root: Path | None = None
    scratch_root: Path | None = None
    runtime_root: Path | None = None

    worker_pool_enabled: bool = True
    worker_pool_size: PositiveInt = 2
    worker_poll_interval_seconds: PositiveFloat = 1.0
    job_timeout_seconds: PositiveFloat = 30.0
    unit_start_method: str = "spawn"

    compiler_bin: str = "caraml"
    backend_bin: str = "emcc"
    compile_timeout_seconds: PositiveFloat = 20.0
    backend_timeout_seconds: PositiveFloat = 20.0
    diagnostic_max_chars: PositiveInt = 4000
    prepare_runtime_on_start: bool = True
    publish_ir: bool = False

    max_source_chars: PositiveInt = 200_000
    stale_job_grace_seconds: PositiveInt | None = None

    @field_validator("state_root", "artifacts_root", "scratch_root", "runtime_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None:
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.artifacts_root is None:
            self.artifacts_root = self.state_root / "artifacts"
        if self.scratch_root is None:
            self.scratch_root = self.state_root / "scratch"
        if self.runtime_root is None:
            self.runtime_root = self.state_root / "runtime"
        for path in (self.artifacts_root, self.scratch_root, self.runtime_root):
            path.mkdir(parents=True, exist_ok=True)

        normalized_method = self.unit_start_method.lower().strip()
        if normalized_method not in SUPPORTED_START_METHODS:
            raise ValueError(f"unit_start_method must be one of {sorted(SUPPORTED_START_METHODS)}")
        self.unit_start_method = normalized_method

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level

        for step in ("compile_timeout_seconds", "backend_timeout_seconds"):
            if getattr(self, step) > self.job_timeout_seconds:
                raise ValueError(f"{step} must not exceed job_timeout_seconds")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "caraml_playground.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
