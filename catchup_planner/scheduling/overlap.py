"""
重複集計

参加者ごとの空きスロット集合から、スロットごとの参加可能人数を数え、
perfect / near / partial に分類してランキングします。
集計は呼び出しのたびにストアの現在内容から再計算し、キャッシュは持ちません。
"""

import logging
import math
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from ..config import OverlapThresholds
from ..errors import ValidationError
from ..models.plan import Plan
from ..models.slot import Slot, parse_slots
from .availability_store import AvailabilityStore
from .quantizer import meeting_slots

logger = logging.getLogger(__name__)


class OverlapClass(str, Enum):
    """重複分類列挙"""
    PERFECT = "perfect"  # 全員参加可能
    NEAR = "near"        # 1人だけ不足
    PARTIAL = "partial"  # 過半数（切り上げ）以上


class SlotCount(BaseModel):
    """スロットごとの集計結果"""
    slot: Slot
    count: int = Field(..., description="参加可能人数")
    classification: OverlapClass
    available_participants: List[str] = Field(default_factory=list, description="参加可能な参加者ID")

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "slot": self.slot.canonical,
            "count": self.count,
            "classification": self.classification.value,
            "available_participants": list(self.available_participants),
        }


class OverlapReport(BaseModel):
    """重複レポート"""
    perfect_count: int = 0
    near_count: int = 0
    total_distinct_slots: int = 0
    total_participants: int = 0
    best_slots: List[SlotCount] = Field(default_factory=list)
    is_waiting: bool = Field(default=True, description="まだ誰も提出していない（回答待ち）")

    @classmethod
    def waiting(cls) -> "OverlapReport":
        """回答待ちの空レポート"""
        return cls(is_waiting=True)

    def perfect_slots(self) -> List[Slot]:
        """perfectスロット（時系列順）"""
        return sorted(entry.slot for entry in self.best_slots if entry.classification == OverlapClass.PERFECT)

    def entry_for(self, slot) -> Optional[SlotCount]:
        """指定スロットの集計結果"""
        target = Slot.parse(slot)
        for entry in self.best_slots:
            if entry.slot == target:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "perfect_count": self.perfect_count,
            "near_count": self.near_count,
            "total_distinct_slots": self.total_distinct_slots,
            "total_participants": self.total_participants,
            "best_slots": [entry.to_dict() for entry in self.best_slots],
            "is_waiting": self.is_waiting,
        }


def count_slots(sets: Mapping[str, Iterable]) -> Dict[Slot, List[str]]:
    """スロット → 参加可能な参加者IDリスト"""
    available: Dict[Slot, List[str]] = {}
    for participant_id in sorted(sets):
        for slot in parse_slots(sets[participant_id]):
            available.setdefault(slot, []).append(participant_id)
    return available


def classify(count: int, total: int, thresholds: Optional[OverlapThresholds] = None) -> Optional[OverlapClass]:
    """参加可能人数を分類（partial未満はNone）"""
    thresholds = thresholds or OverlapThresholds()
    if total <= 0 or count <= 0:
        return None
    if count == total:
        return OverlapClass.PERFECT
    if total > thresholds.near_missing and count == total - thresholds.near_missing:
        return OverlapClass.NEAR
    if count >= math.ceil(total * thresholds.partial_ratio):
        return OverlapClass.PARTIAL
    return None


def compute_overlap(
    sets: Mapping[str, Iterable],
    thresholds: Optional[OverlapThresholds] = None
) -> OverlapReport:
    """
    参加者ごとのスロット集合から重複レポートを計算

    空集合の提出も「提出済み」として参加者数 N に含めます。

    Args:
        sets: 参加者ID → スロット集合（提出済みの参加者のみ）
        thresholds: 分類閾値

    Returns:
        OverlapReport: N == 0 の場合は回答待ちの空レポート
    """
    total = len(sets)
    if total == 0:
        return OverlapReport.waiting()

    available = count_slots(sets)
    best: List[SlotCount] = []
    perfect_count = 0
    near_count = 0

    for slot, participants in available.items():
        classification = classify(len(participants), total, thresholds)
        if classification is None:
            continue
        if classification == OverlapClass.PERFECT:
            perfect_count += 1
        elif classification == OverlapClass.NEAR:
            near_count += 1
        best.append(SlotCount(
            slot=slot,
            count=len(participants),
            classification=classification,
            available_participants=participants
        ))

    # 人数の多い順、同数なら時系列順
    best.sort(key=lambda entry: (-entry.count, entry.slot.day, entry.slot.start))

    return OverlapReport(
        perfect_count=perfect_count,
        near_count=near_count,
        total_distinct_slots=len(available),
        total_participants=total,
        best_slots=best,
        is_waiting=False
    )


class OverlapAggregator:
    """空き時間ストアの内容を集計"""

    def __init__(self, store: AvailabilityStore, thresholds: Optional[OverlapThresholds] = None):
        self.store = store
        self.thresholds = thresholds or OverlapThresholds()

    async def collect(self, plan_id: str, participant_ids: Optional[Iterable[str]] = None) -> Dict[str, set]:
        """提出済み参加者のスロット集合（participant_ids指定時はその参加者に限定）"""
        records = await self.store.get_all(plan_id)
        allowed = set(participant_ids) if participant_ids is not None else None
        return {
            participant_id: record.slots
            for participant_id, record in records.items()
            if allowed is None or participant_id in allowed
        }

    async def aggregate(self, plan_id: str, participant_ids: Optional[Iterable[str]] = None) -> OverlapReport:
        """プランの重複レポートを計算"""
        sets = await self.collect(plan_id, participant_ids)
        report = compute_overlap(sets, self.thresholds)
        logger.debug(
            f"重複集計: プラン {plan_id}, N={report.total_participants}, perfect={report.perfect_count}"
        )
        return report


# 必須参加者を考慮した競合分析

class NearOverlapSlot(BaseModel):
    """必須参加者が1人だけ不足するスロット"""
    slot: Slot
    missing_participants: List[str] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"slot": self.slot.canonical, "missing_participants": list(self.missing_participants)}


class SuggestionType(str, Enum):
    """提案種別列挙"""
    TIME_SUGGESTION = "time_suggestion"
    EXCLUDE_ATTENDEE = "exclude_attendee"


class ConflictSuggestion(BaseModel):
    """競合解決の提案"""
    type: SuggestionType
    suggested_time: Optional[Slot] = None
    attendee_count: Optional[int] = None
    excludee: Optional[str] = None
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "suggested_time": self.suggested_time.canonical if self.suggested_time else None,
            "attendee_count": self.attendee_count,
            "excludee": self.excludee,
            "reasoning": self.reasoning,
        }


class ConflictAnalysis(BaseModel):
    """必須参加者ベースの競合分析結果"""
    total_must_attend: int
    perfect_overlap_slots: List[Slot] = Field(default_factory=list)
    near_overlap_slots: List[NearOverlapSlot] = Field(default_factory=list)
    suggestions: List[ConflictSuggestion] = Field(default_factory=list)

    @property
    def has_perfect_overlap(self) -> bool:
        return bool(self.perfect_overlap_slots)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_perfect_overlap": self.has_perfect_overlap,
            "total_must_attend": self.total_must_attend,
            "perfect_overlap_slots": [slot.canonical for slot in self.perfect_overlap_slots],
            "near_overlap_slots": [entry.to_dict() for entry in self.near_overlap_slots],
            "suggestions": [suggestion.to_dict() for suggestion in self.suggestions],
        }


MAX_TIME_SUGGESTIONS = 3


def analyze_conflicts(plan: Plan, sets: Mapping[str, Iterable]) -> ConflictAnalysis:
    """
    必須参加者（主催者＋must_attendの招待者）を基準に競合を分析

    perfectスロットが1つも無い場合のみ、代替時間の提案（最大3件）と
    任意参加者を除外する提案を生成します。
    """
    must_ids = [plan.initiator_id] + [invitee.contact_ref for invitee in plan.must_attend_invitees()]
    counted = set(plan.participant_ids())
    available = count_slots({pid: slots for pid, slots in sets.items() if pid in counted})
    total_must = len(must_ids)

    perfect: List[Slot] = []
    near: List[NearOverlapSlot] = []
    candidates = []

    for slot in sorted(available):
        participants = available[slot]
        must_count = sum(1 for pid in must_ids if pid in participants)
        if must_count == total_must:
            perfect.append(slot)
        elif total_must > 1 and must_count == total_must - 1:
            near.append(NearOverlapSlot(
                slot=slot,
                missing_participants=[pid for pid in must_ids if pid not in participants]
            ))
        if must_count > 0:
            candidates.append((slot, must_count, len(participants)))

    suggestions: List[ConflictSuggestion] = []
    if not perfect:
        candidates.sort(key=lambda item: (-item[1], -item[2], item[0].day, item[0].start))
        for slot, must_count, total_count in candidates[:MAX_TIME_SUGGESTIONS]:
            suggestions.append(ConflictSuggestion(
                type=SuggestionType.TIME_SUGGESTION,
                suggested_time=slot,
                attendee_count=total_count,
                reasoning=f"必須参加者{total_must}人中{must_count}人が参加可能（全体で{total_count}人）"
            ))

        optional = plan.nice_to_have_invitees()
        if optional and len(suggestions) < MAX_TIME_SUGGESTIONS:
            suggestions.append(ConflictSuggestion(
                type=SuggestionType.EXCLUDE_ATTENDEE,
                excludee=optional[0].contact_ref,
                reasoning=f"任意参加の{optional[0].name}さんを除外すると候補が広がる可能性があります"
            ))

    return ConflictAnalysis(
        total_must_attend=total_must,
        perfect_overlap_slots=perfect,
        near_overlap_slots=near,
        suggestions=suggestions
    )


class MeetingWindow(BaseModel):
    """会議時間全体をカバーする候補"""
    start: Slot
    score: int = Field(..., description="カバーするスロットの最小参加人数")
    slots: List[Slot] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.canonical,
            "score": self.score,
            "slots": [slot.canonical for slot in self.slots],
        }


def rank_meeting_windows(counts: Mapping[Slot, int], duration_minutes: int) -> List[MeetingWindow]:
    """
    会議時間ぶんのスロットが全て空いている開始スロットをランキング

    スコアは窓内スロットの最小参加人数で、スコア降順・時系列順に並べます。
    """
    windows: List[MeetingWindow] = []
    for start in counts:
        try:
            covered = meeting_slots(start, duration_minutes)
        except ValidationError:
            continue
        if not all(counts.get(slot, 0) > 0 for slot in covered):
            continue
        windows.append(MeetingWindow(
            start=start,
            score=min(counts[slot] for slot in covered),
            slots=covered
        ))

    windows.sort(key=lambda window: (-window.score, window.start.day, window.start.start))
    return windows
