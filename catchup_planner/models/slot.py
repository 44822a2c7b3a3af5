"""
Slot 値オブジェクト

作業時間帯（08:00-21:00）内の30分固定幅スロットを表現します。
保存・送受信される表現は `YYYY-MM-DD_HH:MM` のみです。
"""

import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

from ..errors import ValidationError

SLOT_MINUTES = 30
WORKING_DAY_START = time(8, 0)
WORKING_DAY_END = time(21, 0)

_SLOT_PATTERN = re.compile(r'^(\d{4}-\d{2}-\d{2})_(\d{2}):(\d{2})$')


class Slot(BaseModel):
    """30分スロット（不変・正規表現で等価判定）"""

    model_config = ConfigDict(frozen=True)

    day: date
    start: time

    @field_validator('start')
    @classmethod
    def validate_start(cls, v):
        """開始時刻の検証"""
        if v.tzinfo is not None:
            raise ValueError('スロット開始時刻はタイムゾーンなしのローカル時刻である必要があります')
        if v.second or v.microsecond or v.minute % SLOT_MINUTES != 0:
            raise ValueError('スロット開始時刻は毎時00分または30分である必要があります')
        if not is_within_working_window(v):
            raise ValueError('スロット開始時刻は08:00から21:00の範囲である必要があります')
        return v

    @property
    def canonical(self) -> str:
        """正規テキスト表現"""
        return f"{self.day.isoformat()}_{self.start.strftime('%H:%M')}"

    def __str__(self) -> str:
        return self.canonical

    def __repr__(self) -> str:
        return f"Slot({self.canonical!r})"

    def __lt__(self, other: "Slot") -> bool:
        if not isinstance(other, Slot):
            return NotImplemented
        return (self.day, self.start) < (other.day, other.start)

    def __le__(self, other: "Slot") -> bool:
        if not isinstance(other, Slot):
            return NotImplemented
        return (self.day, self.start) <= (other.day, other.start)

    def __gt__(self, other: "Slot") -> bool:
        if not isinstance(other, Slot):
            return NotImplemented
        return (self.day, self.start) > (other.day, other.start)

    def __ge__(self, other: "Slot") -> bool:
        if not isinstance(other, Slot):
            return NotImplemented
        return (self.day, self.start) >= (other.day, other.start)

    def start_datetime(self, tz: Optional[tzinfo] = None) -> datetime:
        """スロット開始日時（tz指定時はそのタイムゾーンのローカル時刻）"""
        return datetime.combine(self.day, self.start, tzinfo=tz)

    def end_datetime(self, tz: Optional[tzinfo] = None) -> datetime:
        """スロット終了日時"""
        return self.start_datetime(tz) + timedelta(minutes=SLOT_MINUTES)

    def next(self) -> Optional["Slot"]:
        """同じ日の次のスロット（作業時間帯外ならNone）"""
        following = (datetime.combine(self.day, self.start) + timedelta(minutes=SLOT_MINUTES)).time()
        if following == time(0, 0) or not is_within_working_window(following):
            return None
        return Slot(day=self.day, start=following)

    @classmethod
    def parse(cls, value: Union[str, "Slot"]) -> "Slot":
        """テキスト表現からスロットを作成"""
        if isinstance(value, Slot):
            return value

        match = _SLOT_PATTERN.match(value.strip()) if isinstance(value, str) else None
        if not match:
            raise ValidationError(f"スロット形式が不正です（YYYY-MM-DD_HH:MM）: {value!r}")

        day_text, hour_text, minute_text = match.groups()
        try:
            slot_day = date.fromisoformat(day_text)
            slot_start = time(int(hour_text), int(minute_text))
        except ValueError as e:
            raise ValidationError(f"スロット日時が不正です: {value!r} ({e})")

        return cls.of(slot_day, slot_start)

    @classmethod
    def of(cls, slot_day: date, slot_start: time) -> "Slot":
        """日付と開始時刻からスロットを作成（ポリシー違反はValidationError）"""
        if slot_start.minute % SLOT_MINUTES != 0 or slot_start.second or slot_start.microsecond:
            raise ValidationError(f"スロットは30分境界である必要があります: {slot_day} {slot_start}")
        if not is_within_working_window(slot_start):
            raise ValidationError(
                f"スロットが作業時間帯（08:00-21:00）外です: {slot_day} {slot_start.strftime('%H:%M')}"
            )
        return cls(day=slot_day, start=slot_start)

    @classmethod
    def from_datetime(cls, value: datetime, tz: Optional[tzinfo] = None) -> "Slot":
        """日時からスロットを作成（tz指定時はそのタイムゾーンに変換）"""
        if tz is not None and value.tzinfo is not None:
            value = value.astimezone(tz)
        return cls.of(value.date(), value.time().replace(tzinfo=None))


def is_within_working_window(value: time) -> bool:
    """開始時刻が作業時間帯 [08:00, 21:00) に含まれるか"""
    return WORKING_DAY_START <= value < WORKING_DAY_END


def parse_slots(values) -> set:
    """スロットテキストの集合をパース（1件でも不正ならValidationError）"""
    return {Slot.parse(value) for value in values}
