from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CURRICULUM_MAP_", env_file=".env", extra="ignore")

    # ---- DB ----
    database_url: str = "sqlite:///./curriculum_map.db"
    db_echo: bool = False

    # ---- Mapping reads ----
    mapping_page_size: int = Field(default=1000, ge=1)
    id_batch_size: int = Field(default=200, ge=1)

    # ---- Resolution behaviour ----
    # Single-mode aggregates with no surviving items still get a grading slot.
    emit_empty_single: bool = True
    # A (class, null) mapping stays in its own bucket unless this is set.
    uncategorized_visible: bool = False

    # JSON file of {category_id: {"icon": ..., "label": ...}}
    presentation_path: Optional[str] = None

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
