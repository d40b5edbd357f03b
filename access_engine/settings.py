from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings.

    Notes:
    - Defaults are local and deterministic (SQLite file next to the repo root).
    - Everything can be overridden with ``ACCESS_*`` environment variables when
      the engine is embedded in a larger system.
    """

    model_config = SettingsConfigDict(env_prefix="ACCESS_", extra="ignore")

    db_url: str | None = None
    access_config_path: str | None = None
    log_level: str = "INFO"

    # Bound on department-tree traversal; protects against malformed parent links.
    max_hierarchy_depth: int = 64
    # Retries for a single membership/role write that lost an optimistic-concurrency race.
    max_write_retries: int = 3

    # Feature flags for optional PII masking.
    mask_email: bool = False
    mask_phone: bool = False

    master_department_code: str = "MASTER"
    department_header: str = "X-Department-Id"

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "access.db"
        return f"sqlite:///{db_path}"

    def resolved_access_config_path(self) -> Path:
        if self.access_config_path:
            return Path(self.access_config_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "access_control.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
