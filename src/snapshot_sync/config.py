from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # batch planning
    TARGET_PAYLOAD_MB: float = 1.5
    MIN_BATCH_SIZE: int = 100
    MAX_BATCH_SIZE: int = 3000

    # retries / pacing
    MAX_RETRIES: int = 3
    RETRY_DELAY_MS: int = 5000
    RATE_LIMIT_DELAY_MS: int = 1500

    # publish behaviour
    USE_STAGING: bool = True
    VALIDATE_UPLOAD: bool = True
    COLUMN_SPAN: str = "A:Z"
    CHECKPOINT_MIN_BATCHES: int = 20
    CHECKPOINT_EVERY: int = 5

    # merge
    KEY_INDEX: int = 1
    PROVENANCE_INDEX: int = 23
    TIE_BREAK: str = "first"

    # local state
    CHECKPOINT_DIR: str = "checkpoints"
    SNAPSHOT_DIR: str = "backups/snapshots"
    SNAPSHOT_RETENTION_DAYS: float = 7

    class Config:
        env_prefix = "SNAPSYNC_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
