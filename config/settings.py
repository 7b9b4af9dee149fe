#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Settings - Centralized configuration management
"""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings


# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings"""

    # ========== Translation Memory ==========
    tm_enabled: bool = True
    tm_db_path: Optional[Path] = None  # Default: <tm_dir>/tm.db

    # Matching
    tm_fuzzy_threshold: float = 0.85  # 85% similarity for fuzzy matches
    tm_auto_apply_threshold: float = 0.95  # Auto-apply without confirmation
    tm_max_results: int = 5
    tm_candidate_limit: int = 1000  # Max candidates scored per fuzzy lookup

    # Scorer weights (must sum to 1.0)
    tm_weight_edit_distance: float = 0.4
    tm_weight_prefix: float = 0.3
    tm_weight_token: float = 0.3

    # Parallel scoring
    tm_parallel_threshold: int = 2000  # Candidates before scoring on several threads
    tm_parallel_workers: int = 0  # 0 = cpu count

    # Cache
    tm_cache_max_entries: int = 10000

    # Quality defaults
    tm_default_machine_quality: float = 0.8
    tm_human_quality: float = 1.0

    # ========== Cleanup / Retention ==========
    tm_cleanup_min_quality: float = 0.7
    tm_cleanup_max_age_days: int = 365
    tm_cleanup_include_unrated: bool = False  # Unrated entries are never evicted by default
    tm_cleanup_interval_hours: int = 24
    tm_cleanup_scheduler_enabled: bool = True

    # ========== Statistics ==========
    tm_tokens_per_reuse: int = 50  # Estimated tokens saved per reuse

    # ========== Exchange ==========
    tm_tmx_tool_name: str = "TM Engine"
    tm_tmx_tool_version: str = "1.0"

    # ========== Logging ==========
    log_level: str = "INFO"
    log_json: bool = False

    # ========== Directories ==========
    database_dir: Path = BASE_DIR / "data"
    logs_dir: Path = BASE_DIR / "data" / "logs"
    tm_dir: Path = BASE_DIR / "data" / "translation_memory"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from .env that aren't defined in model

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Create directories
        for dir_path in [
            self.database_dir,
            self.logs_dir,
            self.tm_dir,
        ]:
            dir_path.mkdir(exist_ok=True, parents=True)

    @property
    def tm_database_path(self) -> Path:
        """Resolved TM database file."""
        return self.tm_db_path or self.tm_dir / "tm.db"


# Global settings instance
settings = Settings()
