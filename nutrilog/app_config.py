from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class Goals(BaseModel):
    daily_kcal: int = 2000
    tdee: int = 2400


class AppConfig(BaseModel):
    goals: Goals = Goals()
    db_name: str = ""
    static_dir: str = "public"
    extension_origin: str = ""

    @property
    def is_test_db(self) -> bool:
        return "test" in self.db_name.lower()


def _load_goals(path: Path) -> Goals:
    if not path.exists():
        return Goals()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load %s, using default goals: %s", path, str(e))
        return Goals()
    data: Dict[str, Any] = raw if isinstance(raw, dict) else {}
    try:
        return Goals.model_validate(data.get("goals") or {})
    except ValidationError as e:
        logger.warning("Invalid goals in %s, using defaults: %s", path, str(e))
        return Goals()


@lru_cache(maxsize=1)
def load_app_config() -> AppConfig:
    """
    Non-auth application settings: daily goals from `config.yml` plus a few env values.
    """
    path = Path((os.getenv("APP_CONFIG_FILE", "") or "").strip() or "config.yml")
    return AppConfig(
        goals=_load_goals(path),
        db_name=(os.getenv("DB_NAME", "") or "").strip(),
        static_dir=(os.getenv("APP_STATIC_DIR", "") or "").strip() or "public",
        extension_origin=(os.getenv("CHROME_EXTENSION_ORIGIN", "") or "").strip(),
    )
