"""
空き時間ストア

プラン×参加者ごとに空きスロット集合と出所を保持します。
提出は参加者単位で全置き換え（最後の書き込みが勝つ）で、
完成したレコードを1回の書き込みで保存するため途中状態は見えません。
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Set

from ..errors import NotFoundError, ValidationError
from ..models.availability import AvailabilitySource, ParticipantAvailability, SlotProvenance
from ..models.repository import AvailabilityRepository, InMemoryAvailabilityRepository
from ..models.slot import Slot, parse_slots

logger = logging.getLogger(__name__)


def build_entries(
    slots: Set[Slot],
    source: AvailabilitySource,
    calendar_slots: Optional[Set[Slot]] = None,
    manual_slots: Optional[Set[Slot]] = None
) -> Dict[str, SlotProvenance]:
    """
    スロットごとの出所フラグを構築

    - calendar: 全スロットをカレンダー由来とする
    - manual: 全スロットを手動指定とする
    - mixed: calendar_slots をカレンダー由来、manual_slots（未指定時は calendar_slots 以外）を手動指定とし、
      両方に含まれるスロットは両フラグを持つ
    """
    calendar_slots = calendar_slots or set()
    for label, subset in (("calendar_slots", calendar_slots), ("manual_slots", manual_slots or set())):
        extra = subset - slots
        if extra:
            raise ValidationError(
                f"{label} に提出スロット外のスロットが含まれています: {sorted(str(slot) for slot in extra)}"
            )

    source = AvailabilitySource(source)
    if source == AvailabilitySource.CALENDAR:
        return {slot.canonical: SlotProvenance(calendar=True) for slot in slots}
    if source == AvailabilitySource.MANUAL:
        return {slot.canonical: SlotProvenance(manual=True) for slot in slots}

    if manual_slots is None:
        manual_slots = slots - calendar_slots

    entries: Dict[str, SlotProvenance] = {}
    for slot in slots:
        from_calendar = slot in calendar_slots
        # どちらの部分集合にも無いスロットは手動指定扱い
        from_manual = slot in manual_slots or not from_calendar
        entries[slot.canonical] = SlotProvenance(calendar=from_calendar, manual=from_manual)
    return entries


class AvailabilityStore:
    """参加者ごとの空き時間ストア"""

    def __init__(self, repository: Optional[AvailabilityRepository] = None):
        self.repository = repository or InMemoryAvailabilityRepository()

    async def submit(
        self,
        plan_id: str,
        participant_id: str,
        slots: Iterable,
        source: AvailabilitySource = AvailabilitySource.MANUAL,
        calendar_slots: Optional[Iterable] = None,
        manual_slots: Optional[Iterable] = None
    ) -> ParticipantAvailability:
        """
        参加者の空き時間を提出（既存の提出を丸ごと置き換え）

        Args:
            plan_id: プランID
            participant_id: 参加者ID
            slots: スロット（テキスト表現またはSlot）
            source: 提出元
            calendar_slots: mixed時のカレンダー由来スロット
            manual_slots: mixed時の手動指定スロット

        Returns:
            ParticipantAvailability: 保存されたレコード

        Raises:
            ValidationError: 不正なスロット・出所指定（何も書き込まれない）
        """
        try:
            source = AvailabilitySource(source)
        except ValueError:
            raise ValidationError(f"不明な提出元です: {source!r}")

        parsed = parse_slots(slots)
        entries = build_entries(
            parsed,
            source,
            calendar_slots=parse_slots(calendar_slots) if calendar_slots is not None else None,
            manual_slots=parse_slots(manual_slots) if manual_slots is not None else None
        )

        record = ParticipantAvailability(
            plan_id=plan_id,
            participant_id=participant_id,
            entries=entries,
            source=source,
            submitted_at=datetime.now(timezone.utc)
        )

        existing = await self.repository.get(plan_id, participant_id)
        if existing is not None and existing.source == record.source and existing.same_entries_as(record):
            logger.debug(f"同一内容の再提出のため書き込みを省略: {plan_id}/{participant_id}")
            return existing

        saved = await self.repository.put(record)
        logger.info(f"空き時間を保存: プラン {plan_id}, 参加者 {participant_id}, {len(entries)}スロット")
        return saved

    async def get(self, plan_id: str, participant_id: str) -> ParticipantAvailability:
        """参加者の空き時間を取得（未提出ならNotFoundError）"""
        record = await self.find(plan_id, participant_id)
        if record is None:
            raise NotFoundError(f"参加者 {participant_id} はプラン {plan_id} に空き時間を提出していません")
        return record

    async def find(self, plan_id: str, participant_id: str) -> Optional[ParticipantAvailability]:
        """参加者の空き時間を取得（未提出ならNone）"""
        return await self.repository.get(plan_id, participant_id)

    async def get_all(self, plan_id: str) -> Dict[str, ParticipantAvailability]:
        """プランの全参加者の空き時間"""
        records = await self.repository.list_for_plan(plan_id)
        return {record.participant_id: record for record in records}

    async def remove(self, plan_id: str, participant_id: str) -> bool:
        """参加者の空き時間を削除（招待者の削除時）"""
        removed = await self.repository.delete(plan_id, participant_id)
        if removed:
            logger.info(f"空き時間を削除: プラン {plan_id}, 参加者 {participant_id}")
        return removed

    async def restore(
        self,
        plan_id: str,
        participant_id: str,
        previous: Optional[ParticipantAvailability]
    ) -> None:
        """提出前のレコードに戻す（提出前に未提出だった場合は削除）"""
        if previous is None:
            await self.repository.delete(plan_id, participant_id)
        else:
            await self.repository.put(previous)
        logger.info(f"空き時間の提出を取り消し: プラン {plan_id}, 参加者 {participant_id}")
