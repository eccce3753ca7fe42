"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with COWORK_MEMORY_ prefix.
Example: COWORK_MEMORY_LOG_LEVEL=DEBUG
"""

import logging
from pathlib import Path
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """CoworkMemory configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="COWORK_MEMORY_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Core paths
    project_root: str = "."
    storage_path: Optional[str] = None  # Auto-detect if not set
    db_name: str = "memory.db"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Retrieval defaults
    default_query_limit: int = Field(default=8, ge=1, le=50)
    lexical_weight: float = Field(default=0.35, ge=0.0, le=1.0)
    dense_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    graph_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    rerank_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    min_relevance: float = Field(default=0.05, ge=0.05, le=1.0)

    # Create-time deduplication
    dedup_similarity_threshold: float = Field(default=0.9, ge=0.5, le=1.0)

    # Consolidation
    consolidation_enabled: bool = True
    consolidation_interval_minutes: int = Field(default=360, ge=1)
    consolidation_max_atoms: Optional[int] = None  # Size budget for one run
    consolidation_max_seconds: Optional[float] = None  # Time budget for one run

    def get_storage_path(self) -> str:
        """
        Determine storage path with project isolation.

        Priority:
        1. storage_path setting (explicit override via COWORK_MEMORY_STORAGE_PATH)
        2. <project_root>/.cowork/memory
        """
        if self.storage_path:
            Path(self.storage_path).mkdir(parents=True, exist_ok=True)
            return self.storage_path

        storage = Path(self.project_root).resolve() / ".cowork" / "memory"
        storage.mkdir(parents=True, exist_ok=True)
        logger.info(f"Using project-specific storage: {storage}")
        return str(storage)


# Singleton instance
settings = Settings()
