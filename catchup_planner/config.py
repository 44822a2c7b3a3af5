"""
設定管理

環境変数（CATCHUP_*）から日程調整ポリシーとFirestore接続設定を読み込みます。
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class OverlapThresholds(BaseModel):
    """重複分類の閾値（表示用ヒューリスティック）"""
    near_missing: int = Field(default=1, description="nearとみなす不足人数")
    partial_ratio: float = Field(default=0.5, description="partialとみなす参加率（切り上げ）")

    @field_validator('near_missing')
    @classmethod
    def validate_near_missing(cls, v):
        """不足人数の検証"""
        if v < 1:
            raise ValueError('near_missingは1以上である必要があります')
        return v

    @field_validator('partial_ratio')
    @classmethod
    def validate_partial_ratio(cls, v):
        """参加率の検証"""
        if v <= 0 or v > 1:
            raise ValueError('partial_ratioは0より大きく1以下である必要があります')
        return v


class SchedulingSettings(BaseModel):
    """日程調整設定"""
    max_date_range_days: int = 14
    archive_retention_days: int = 7
    invite_link_expiry_days: int = 30
    reminder_cooldown_minutes: int = 60
    max_transition_attempts: int = 3
    default_timezone: str = "Asia/Tokyo"
    base_url: str = "http://localhost:3000"
    storage_backend: str = "memory"  # memory / firestore
    overlap: OverlapThresholds = Field(default_factory=OverlapThresholds)

    @classmethod
    def from_env(cls) -> "SchedulingSettings":
        """環境変数から設定を作成"""
        defaults = cls()
        return cls(
            max_date_range_days=int(os.getenv("CATCHUP_MAX_DATE_RANGE_DAYS", defaults.max_date_range_days)),
            archive_retention_days=int(os.getenv("CATCHUP_ARCHIVE_RETENTION_DAYS", defaults.archive_retention_days)),
            invite_link_expiry_days=int(os.getenv("CATCHUP_INVITE_LINK_EXPIRY_DAYS", defaults.invite_link_expiry_days)),
            reminder_cooldown_minutes=int(
                os.getenv("CATCHUP_REMINDER_COOLDOWN_MINUTES", defaults.reminder_cooldown_minutes)
            ),
            max_transition_attempts=int(
                os.getenv("CATCHUP_MAX_TRANSITION_ATTEMPTS", defaults.max_transition_attempts)
            ),
            default_timezone=os.getenv("CATCHUP_DEFAULT_TIMEZONE", defaults.default_timezone),
            base_url=os.getenv("CATCHUP_BASE_URL", defaults.base_url),
            storage_backend=os.getenv("CATCHUP_STORAGE", defaults.storage_backend),
            overlap=OverlapThresholds(
                near_missing=int(os.getenv("CATCHUP_NEAR_MISSING", defaults.overlap.near_missing)),
                partial_ratio=float(os.getenv("CATCHUP_PARTIAL_RATIO", defaults.overlap.partial_ratio)),
            ),
        )


class FirestoreConfig(BaseModel):
    """Firestore設定"""
    project_id: str
    database_id: str = "(default)"
    credentials_path: Optional[str] = None
    emulator_host: Optional[str] = None  # 開発環境用
    encryption_key: Optional[str] = None
    max_retry_attempts: int = 3
    timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "FirestoreConfig":
        """環境変数からFirestore設定を作成"""
        return cls(
            project_id=os.getenv("CATCHUP_FIRESTORE_PROJECT", "catchup-planner"),
            database_id=os.getenv("CATCHUP_FIRESTORE_DATABASE", "(default)"),
            credentials_path=os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
            emulator_host=os.getenv("FIRESTORE_EMULATOR_HOST"),
            encryption_key=os.getenv("ENCRYPTION_KEY"),
        )
