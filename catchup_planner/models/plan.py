"""
Plan エンティティモデル

日程調整プランとそのライフサイクル状態を表現します。
ステータス遷移は PLAN_TRANSITIONS の遷移表のみで判定します。
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import IllegalTransitionError
from .slot import Slot, WORKING_DAY_END, WORKING_DAY_START

MAX_DATE_RANGE_DAYS = 14
MAX_DURATION_MINUTES = int(
    (datetime.combine(date.min, WORKING_DAY_END) - datetime.combine(date.min, WORKING_DAY_START)).total_seconds() // 60
)


class PlanStatus(str, Enum):
    """プランステータス列挙"""
    DRAFT = "draft"
    COLLECTING_AVAILABILITY = "collecting_availability"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AttendanceType(str, Enum):
    """出席区分列挙"""
    MUST_ATTEND = "must_attend"    # 必須参加
    NICE_TO_HAVE = "nice_to_have"  # 任意参加


PLAN_TRANSITIONS: Dict[PlanStatus, frozenset] = {
    PlanStatus.DRAFT: frozenset({
        PlanStatus.COLLECTING_AVAILABILITY,
        PlanStatus.SCHEDULED,  # 主催者のみのプラン
        PlanStatus.CANCELLED
    }),
    PlanStatus.COLLECTING_AVAILABILITY: frozenset({
        PlanStatus.SCHEDULED,
        PlanStatus.CANCELLED
    }),
    PlanStatus.SCHEDULED: frozenset({
        PlanStatus.COMPLETED,
        PlanStatus.CANCELLED
    }),
    PlanStatus.COMPLETED: frozenset(),  # 終了状態
    PlanStatus.CANCELLED: frozenset(),  # 終了状態
}

TERMINAL_STATUSES = frozenset({PlanStatus.COMPLETED, PlanStatus.CANCELLED})
EDITABLE_STATUSES = frozenset({PlanStatus.DRAFT, PlanStatus.COLLECTING_AVAILABILITY})


def is_legal_transition(current: PlanStatus, requested: PlanStatus) -> bool:
    """遷移表に従って遷移可能か判定"""
    return PlanStatus(requested) in PLAN_TRANSITIONS.get(PlanStatus(current), frozenset())


class Invitee(BaseModel):
    """招待者"""
    contact_ref: str = Field(..., description="連絡先参照（外部の連絡先ディレクトリのID）")
    display_name: Optional[str] = Field(None, description="表示名")
    attendance_type: AttendanceType = Field(default=AttendanceType.MUST_ATTEND, description="出席区分")
    has_responded: bool = Field(default=False, description="空き時間を提出済みか")

    @field_validator('contact_ref')
    @classmethod
    def validate_contact_ref(cls, v):
        """連絡先参照の検証"""
        if not v or not v.strip():
            raise ValueError('招待者の連絡先参照は必須です')
        return v.strip()

    @property
    def name(self) -> str:
        """表示用の名前"""
        return self.display_name or self.contact_ref

    def is_must_attend(self) -> bool:
        """必須参加者かどうか"""
        return self.attendance_type == AttendanceType.MUST_ATTEND

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "contact_ref": self.contact_ref,
            "display_name": self.display_name,
            "attendance_type": self.attendance_type.value,
            "has_responded": self.has_responded,
        }


class Plan(BaseModel):
    """日程調整プランエンティティ"""

    # 基本識別情報
    plan_id: str = Field(default_factory=lambda: str(uuid4()))
    initiator_id: str = Field(..., description="主催者のユーザーID")

    # プラン詳細
    activity_type: Optional[str] = Field(None, description="アクティビティ種別（ランチ、飲み会など）")
    duration_minutes: int = Field(..., description="予定時間（分）")
    date_range_start: date = Field(..., description="候補期間の開始日")
    date_range_end: date = Field(..., description="候補期間の終了日")
    location: Optional[str] = Field(None, description="場所")
    notes: Optional[str] = Field(None, description="メモ")
    timezone: str = Field(default="Asia/Tokyo", description="プランのローカルタイムゾーン")

    # 参加者
    invitees: List[Invitee] = Field(default_factory=list, description="招待者リスト")

    # ワークフロー状態
    status: PlanStatus = Field(default=PlanStatus.DRAFT, description="プランステータス")
    status_changed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finalized_time: Optional[datetime] = Field(None, description="確定した開始日時（ローカル時刻）")
    finalized_by: Optional[str] = Field(None, description="確定操作を行ったユーザー")
    archived_at: Optional[datetime] = Field(None, description="アーカイブ日時")
    last_reminder_sent_at: Optional[datetime] = Field(None, description="最後のリマインダー送信日時")

    # メタデータ
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=0, description="楽観的排他制御用バージョン")

    model_config = ConfigDict(validate_assignment=True)

    @field_validator('initiator_id')
    @classmethod
    def validate_initiator_id(cls, v):
        """主催者IDの検証"""
        if not v or not v.strip():
            raise ValueError('主催者IDは必須です')
        return v.strip()

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, v):
        """時間の検証"""
        if v <= 0 or v > MAX_DURATION_MINUTES:
            raise ValueError(f'時間は1分以上{MAX_DURATION_MINUTES}分以下である必要があります')
        return v

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        """タイムゾーンの検証"""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f'不明なタイムゾーンです: {v}')
        return v

    @model_validator(mode='after')
    def validate_invariants(self):
        """日付範囲と確定日時の整合性"""
        if self.date_range_end < self.date_range_start:
            raise ValueError('終了日は開始日以降である必要があります')
        if self.status == PlanStatus.SCHEDULED and self.finalized_time is None:
            raise ValueError('確定済みプランには確定日時が必要です')
        if self.finalized_time is not None and not self.contains_date(self.finalized_time.date()):
            raise ValueError('確定日時は候補期間内である必要があります')
        return self

    @property
    def tz(self) -> ZoneInfo:
        """プランのタイムゾーン"""
        return ZoneInfo(self.timezone)

    @property
    def finalized_slot(self) -> Optional[Slot]:
        """確定スロット"""
        if self.finalized_time is None:
            return None
        return Slot.from_datetime(self.finalized_time, self.tz)

    def update_timestamp(self) -> None:
        """更新タイムスタンプを現在時刻に設定"""
        self.updated_at = datetime.now(timezone.utc)

    def date_range_days(self) -> int:
        """候補期間の日数差"""
        return (self.date_range_end - self.date_range_start).days

    def contains_date(self, target: date) -> bool:
        """候補期間内の日付か"""
        return self.date_range_start <= target <= self.date_range_end

    # ステータス遷移

    def can_transition_to(self, new_status: PlanStatus) -> bool:
        """ステータス遷移が可能かチェック"""
        if self.is_archived():
            return False
        return is_legal_transition(self.status, new_status)

    def ensure_transition(self, new_status: PlanStatus, operation: Optional[str] = None) -> None:
        """遷移不可ならIllegalTransitionErrorを送出"""
        if not self.can_transition_to(new_status):
            raise IllegalTransitionError(
                self.status,
                new_status,
                operation=operation,
                plan_id=self.plan_id
            )

    def transition_to(self, new_status: PlanStatus, operation: Optional[str] = None) -> None:
        """ステータス遷移を実行"""
        self.ensure_transition(new_status, operation)
        self.status = new_status
        self.status_changed_at = datetime.now(timezone.utc)
        self.update_timestamp()

    def ensure_editable(self, operation: str) -> None:
        """編集可能なステータス（draft / collecting_availability）か確認"""
        if self.status not in EDITABLE_STATUSES or self.is_archived():
            raise IllegalTransitionError(self.status, None, operation=operation, plan_id=self.plan_id)

    def is_terminal(self) -> bool:
        """終了状態かどうか"""
        return self.status in TERMINAL_STATUSES

    def is_archived(self) -> bool:
        """アーカイブ済みかどうか"""
        return self.archived_at is not None

    # 参加者

    def get_invitee(self, contact_ref: str) -> Optional[Invitee]:
        """連絡先参照で招待者を取得"""
        for invitee in self.invitees:
            if invitee.contact_ref == contact_ref:
                return invitee
        return None

    def is_participant(self, participant_id: str) -> bool:
        """主催者または招待者かどうか"""
        return participant_id == self.initiator_id or self.get_invitee(participant_id) is not None

    def participant_ids(self) -> List[str]:
        """主催者＋招待者のIDリスト"""
        return [self.initiator_id] + [invitee.contact_ref for invitee in self.invitees]

    def must_attend_invitees(self) -> List[Invitee]:
        """必須参加の招待者"""
        return [invitee for invitee in self.invitees if invitee.is_must_attend()]

    def nice_to_have_invitees(self) -> List[Invitee]:
        """任意参加の招待者"""
        return [invitee for invitee in self.invitees if not invitee.is_must_attend()]

    def pending_invitees(self) -> List[Invitee]:
        """未回答の招待者"""
        return [invitee for invitee in self.invitees if not invitee.has_responded]

    def all_must_attend_responded(self) -> bool:
        """必須参加者全員が回答済みか"""
        return all(invitee.has_responded for invitee in self.must_attend_invitees())

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "plan_id": self.plan_id,
            "initiator_id": self.initiator_id,
            "activity_type": self.activity_type,
            "duration_minutes": self.duration_minutes,
            "date_range_start": self.date_range_start.isoformat(),
            "date_range_end": self.date_range_end.isoformat(),
            "location": self.location,
            "notes": self.notes,
            "timezone": self.timezone,
            "invitees": [invitee.to_dict() for invitee in self.invitees],
            "status": self.status.value,
            "status_changed_at": self.status_changed_at.isoformat(),
            "finalized_time": self.finalized_time.isoformat() if self.finalized_time else None,
            "finalized_by": self.finalized_by,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "last_reminder_sent_at": self.last_reminder_sent_at.isoformat() if self.last_reminder_sent_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        """辞書から Plan インスタンスを作成"""
        data = dict(data)

        # datetimeフィールドの変換
        datetime_fields = [
            "status_changed_at", "finalized_time", "archived_at",
            "last_reminder_sent_at", "created_at", "updated_at"
        ]
        for field in datetime_fields:
            if isinstance(data.get(field), str):
                data[field] = datetime.fromisoformat(data[field])

        for field in ("date_range_start", "date_range_end"):
            if isinstance(data.get(field), str):
                data[field] = date.fromisoformat(data[field])

        data["invitees"] = [Invitee(**invitee) for invitee in data.get("invitees") or []]

        return cls(**data)


def retention_cutoff(now: datetime, retention_days: int) -> datetime:
    """自動アーカイブの基準日時"""
    return now - timedelta(days=retention_days)
