"""
スロット量子化

壁時計の時間範囲を、作業時間帯内の30分スロット集合に変換します。
作業時間帯（08:00-21:00）外の境界はエラーにせず黙って除外します。
"""

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Iterable, List, Optional, Set, Tuple

from ..errors import ValidationError
from ..models.slot import SLOT_MINUTES, Slot, WORKING_DAY_END, is_within_working_window

logger = logging.getLogger(__name__)

_SLOT_DELTA = timedelta(minutes=SLOT_MINUTES)


def _to_local(value: datetime, tz: Optional[tzinfo]) -> datetime:
    """プランのローカル壁時計時刻（タイムゾーンなし）に変換"""
    if value.tzinfo is not None and tz is not None:
        value = value.astimezone(tz)
    return value.replace(tzinfo=None)


def _ceil_to_boundary(value: datetime) -> datetime:
    """次の30分境界に切り上げ（境界上ならそのまま）"""
    floored = value.replace(
        minute=(value.minute // SLOT_MINUTES) * SLOT_MINUTES,
        second=0,
        microsecond=0
    )
    if floored == value:
        return floored
    return floored + _SLOT_DELTA


def quantize(range_start: datetime, range_end: datetime, tz: Optional[tzinfo] = None) -> Set[Slot]:
    """
    時間範囲 [range_start, range_end) をスロット集合に変換

    範囲内の30分境界ごとにスロットを出力します（終了時刻にかかるスロットも含む）。
    タイムゾーン付きの入力は tz（未指定時は range_start のタイムゾーン）に変換してから量子化します。

    Args:
        range_start: 範囲の開始日時
        range_end: 範囲の終了日時（この時刻は含まない）
        tz: プランのタイムゾーン

    Returns:
        Set[Slot]: 作業時間帯内のスロット集合
    """
    if tz is None and range_start.tzinfo is not None:
        tz = range_start.tzinfo

    start = _to_local(range_start, tz)
    end = _to_local(range_end, tz)

    slots: Set[Slot] = set()
    if end <= start:
        return slots

    boundary = _ceil_to_boundary(start)
    while boundary < end:
        if is_within_working_window(boundary.time()):
            slots.add(Slot(day=boundary.date(), start=boundary.time()))
        boundary += _SLOT_DELTA

    return slots


def slots_from_free_ranges(
    ranges: Iterable[Tuple[datetime, datetime]],
    tz: Optional[tzinfo] = None
) -> Set[Slot]:
    """外部カレンダーから得た空き時間範囲群をスロット集合に変換"""
    slots: Set[Slot] = set()
    for range_start, range_end in ranges:
        slots |= quantize(range_start, range_end, tz)
    logger.debug(f"空き時間範囲を量子化: {len(slots)}スロット")
    return slots


def meeting_slots(start_slot: Slot, duration_minutes: int) -> List[Slot]:
    """
    開始スロットから指定時間の会議が占めるスロット列

    Raises:
        ValidationError: 会議が21:00を超える場合
    """
    if duration_minutes <= 0:
        raise ValidationError(f"会議時間は正の値である必要があります: {duration_minutes}")

    start_slot = Slot.parse(start_slot)
    meeting_end = start_slot.start_datetime() + timedelta(minutes=duration_minutes)
    window_end = datetime.combine(start_slot.day, WORKING_DAY_END)
    if meeting_end > window_end:
        raise ValidationError(
            f"{start_slot} から{duration_minutes}分の会議は作業時間帯（21:00まで）に収まりません"
        )

    covered: List[Slot] = []
    current: Optional[Slot] = start_slot
    while current is not None and current.start_datetime() < meeting_end:
        covered.append(current)
        current = current.next()
    return covered
