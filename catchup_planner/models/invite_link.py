"""
InviteLink エンティティモデル

招待者ごとのプラン単位アクセストークンを表現します。
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

DEFAULT_LINK_EXPIRY_DAYS = 30


def generate_token() -> str:
    """URLセーフなトークンを生成"""
    return secrets.token_urlsafe(32)


class InviteLink(BaseModel):
    """招待リンク"""
    token: str = Field(default_factory=generate_token)
    plan_id: str = Field(..., description="関連するプランID")
    contact_ref: str = Field(..., description="招待者の連絡先参照")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = Field(None, description="有効期限")
    accessed_at: Optional[datetime] = Field(None, description="初回アクセス日時")
    submitted_at: Optional[datetime] = Field(None, description="空き時間提出日時")
    invalidated_at: Optional[datetime] = Field(None, description="無効化日時")

    @classmethod
    def issue(cls, plan_id: str, contact_ref: str, expiry_days: int = DEFAULT_LINK_EXPIRY_DAYS) -> "InviteLink":
        """新しい招待リンクを発行"""
        now = datetime.now(timezone.utc)
        return cls(
            plan_id=plan_id,
            contact_ref=contact_ref,
            created_at=now,
            expires_at=now + timedelta(days=expiry_days)
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """期限切れかどうか"""
        now = now or datetime.now(timezone.utc)
        return self.expires_at is not None and now > self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """有効なリンクかどうか"""
        return self.invalidated_at is None and not self.is_expired(now)

    def url(self, base_url: str) -> str:
        """招待URL"""
        return f"{base_url.rstrip('/')}/availability/{self.token}"

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "token": self.token,
            "plan_id": self.plan_id,
            "contact_ref": self.contact_ref,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "accessed_at": self.accessed_at.isoformat() if self.accessed_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "invalidated_at": self.invalidated_at.isoformat() if self.invalidated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InviteLink":
        """辞書から InviteLink インスタンスを作成"""
        data = dict(data)
        for field in ("created_at", "expires_at", "accessed_at", "submitted_at", "invalidated_at"):
            if isinstance(data.get(field), str):
                data[field] = datetime.fromisoformat(data[field])
        return cls(**data)
