"""
ParticipantAvailability エンティティモデル

1つのプランにおける1人の参加者の空きスロット集合と、
スロットごとの出所（カレンダー由来／手動指定）を表現します。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .slot import Slot


class AvailabilitySource(str, Enum):
    """提出元列挙"""
    CALENDAR = "calendar"  # カレンダーの空き時間から取り込み
    MANUAL = "manual"      # 手動でスロットを選択
    MIXED = "mixed"        # 両方の組み合わせ


class SlotProvenance(BaseModel):
    """スロットの出所フラグ"""

    model_config = ConfigDict(frozen=True)

    calendar: bool = False
    manual: bool = False

    @model_validator(mode='after')
    def validate_flags(self):
        """少なくとも1つのフラグが立っていること"""
        if not (self.calendar or self.manual):
            raise ValueError('スロットの出所はカレンダーまたは手動のいずれかである必要があります')
        return self

    def merge(self, other: "SlotProvenance") -> "SlotProvenance":
        """出所フラグを合成"""
        return SlotProvenance(
            calendar=self.calendar or other.calendar,
            manual=self.manual or other.manual
        )


class ParticipantAvailability(BaseModel):
    """参加者の空き時間（最新の提出で全体を置き換え）"""

    plan_id: str = Field(..., description="関連するプランID")
    participant_id: str = Field(..., description="参加者ID（主催者IDまたは招待者のcontact_ref）")
    entries: Dict[str, SlotProvenance] = Field(
        default_factory=dict,
        description="正規スロット表現 → 出所フラグ"
    )
    source: AvailabilitySource = Field(default=AvailabilitySource.MANUAL, description="提出元")
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('entries')
    @classmethod
    def validate_entries(cls, v):
        """スロットキーを正規表現に揃える"""
        return {Slot.parse(key).canonical: provenance for key, provenance in v.items()}

    @property
    def slots(self) -> Set[Slot]:
        """空きスロット集合"""
        return {Slot.parse(key) for key in self.entries}

    def sorted_slots(self) -> List[str]:
        """時系列順の正規スロット表現リスト"""
        return [slot.canonical for slot in sorted(self.slots)]

    def provenance_of(self, slot: Slot) -> SlotProvenance:
        """指定スロットの出所"""
        return self.entries[Slot.parse(slot).canonical]

    def has_slot(self, slot: Slot) -> bool:
        """指定スロットが空いているか"""
        return Slot.parse(slot).canonical in self.entries

    def is_empty(self) -> bool:
        """空集合の提出かどうか"""
        return not self.entries

    def same_entries_as(self, other: "ParticipantAvailability") -> bool:
        """スロットと出所が同一か"""
        return self.entries == other.entries

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（Firestore保存用）"""
        return {
            "plan_id": self.plan_id,
            "participant_id": self.participant_id,
            "entries": {
                key: {"calendar": provenance.calendar, "manual": provenance.manual}
                for key, provenance in self.entries.items()
            },
            "source": self.source.value,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantAvailability":
        """辞書から ParticipantAvailability インスタンスを作成"""
        data = dict(data)
        if isinstance(data.get("submitted_at"), str):
            data["submitted_at"] = datetime.fromisoformat(data["submitted_at"])
        data["entries"] = {
            key: SlotProvenance(**flags) for key, flags in (data.get("entries") or {}).items()
        }
        return cls(**data)
