"""
Catchup Planner CLI - スロット量子化・重複集計・プランシミュレーション用CLI
"""

import asyncio
import logging
import random
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..errors import SchedulingError
from ..models.plan import AttendanceType
from ..models.slot import Slot
from ..scheduling.lifecycle import PlanLifecycleController
from ..scheduling.overlap import OverlapClass, OverlapReport, compute_overlap, count_slots, rank_meeting_windows
from ..scheduling.quantizer import quantize

console = Console()
app = typer.Typer(help="Catchup Planner CLI - 日程調整テストツール")

# ログ設定
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CLASS_STYLES = {
    OverlapClass.PERFECT: "green",
    OverlapClass.NEAR: "yellow",
    OverlapClass.PARTIAL: "cyan",
}


def _fail(error: Exception) -> None:
    console.print(f"❌ {error}", style="red")
    raise typer.Exit(code=1)


def _display_report(report: OverlapReport, title: str = "Overlap Report") -> None:
    """重複レポートを表示"""
    if report.is_waiting:
        console.print("⏳ まだ誰も空き時間を提出していません（回答待ち）", style="yellow")
        return

    console.print(Panel.fit(
        f"参加者数: {report.total_participants}\n"
        f"候補スロット数: {report.total_distinct_slots}\n"
        f"perfect: {report.perfect_count} / near: {report.near_count}",
        title=title
    ))

    table = Table(title="Best Slots")
    table.add_column("Slot", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Class")
    table.add_column("Participants")

    for entry in report.best_slots:
        style = CLASS_STYLES.get(entry.classification, "white")
        table.add_row(
            entry.slot.canonical,
            str(entry.count),
            f"[{style}]{entry.classification.value}[/{style}]",
            ", ".join(entry.available_participants)
        )

    console.print(table)


def _load_participant_slots(path: str) -> Dict[str, List[str]]:
    """YAMLファイルから参加者ごとのスロットを読み込み"""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    participants = data.get('participants', data) if isinstance(data, dict) else None
    if not isinstance(participants, dict):
        raise typer.BadParameter("participants: {参加者ID: [スロット, ...]} 形式である必要があります")
    return {str(pid): list(slots or []) for pid, slots in participants.items()}


@app.command("quantize")
def quantize_command(
    start: str = typer.Argument(..., help="開始日時 (ISO 8601, 例: 2025-03-11T09:00)"),
    end: str = typer.Argument(..., help="終了日時 (ISO 8601)"),
    timezone: Optional[str] = typer.Option(None, help="プランのタイムゾーン (例: Asia/Tokyo)")
):
    """空き時間範囲をスロットに変換"""
    try:
        tz = ZoneInfo(timezone) if timezone else None
        slots = sorted(quantize(datetime.fromisoformat(start), datetime.fromisoformat(end), tz))
    except (ValueError, ZoneInfoNotFoundError) as e:
        _fail(e)

    if not slots:
        console.print("作業時間帯（08:00-21:00）内のスロットはありません", style="yellow")
        return

    for slot in slots:
        console.print(slot.canonical)
    console.print(f"📊 {len(slots)}スロット", style="green")


@app.command("overlap")
def overlap_command(
    file: str = typer.Argument(..., help="参加者ごとのスロット一覧 (YAML)"),
    duration: Optional[int] = typer.Option(None, help="予定時間（分）を指定すると候補開始時刻も表示")
):
    """YAMLファイルの空き時間から重複レポートを表示"""
    sets = _load_participant_slots(file)
    try:
        report = compute_overlap(sets)
        _display_report(report)

        if duration:
            counts = {slot: len(pids) for slot, pids in count_slots(sets).items()}
            windows = rank_meeting_windows(counts, duration)
            table = Table(title=f"Meeting Windows ({duration}分)")
            table.add_column("Start", style="cyan")
            table.add_column("Score", justify="right")
            for window in windows[:10]:
                table.add_row(window.start.canonical, str(window.score))
            console.print(table)
    except SchedulingError as e:
        _fail(e)


@app.command("simulate")
def simulate(
    invitees: int = typer.Option(3, help="招待者数"),
    days: int = typer.Option(3, help="候補期間の日数"),
    duration: int = typer.Option(60, help="予定時間（分）"),
    seed: Optional[int] = typer.Option(None, help="乱数シード"),
    start_date: Optional[str] = typer.Option(None, help="候補期間の開始日 (YYYY-MM-DD、省略時は明日)")
):
    """インメモリでプラン作成から確定までを実行"""

    async def _simulate():
        rng = random.Random(seed)
        controller = PlanLifecycleController()
        first_day = date.fromisoformat(start_date) if start_date else date.today() + timedelta(days=1)
        last_day = first_day + timedelta(days=max(days, 1) - 1)

        # Step 1: プラン作成
        result = await controller.create_plan(
            initiator_id="organizer",
            date_range_start=first_day,
            date_range_end=last_day,
            duration_minutes=duration,
            activity_type="ランチ",
            invitees=[
                {
                    "contact_ref": f"guest_{i + 1}",
                    "display_name": f"ゲスト{i + 1}",
                    "attendance_type": AttendanceType.MUST_ATTEND if i % 3 != 2 else AttendanceType.NICE_TO_HAVE,
                }
                for i in range(invitees)
            ]
        )
        plan = result.plan
        console.print(Panel.fit(
            f"ID: {plan.plan_id}\n"
            f"期間: {plan.date_range_start} 〜 {plan.date_range_end}\n"
            f"ステータス: {plan.status.value}\n"
            f"招待者数: {len(plan.invitees)}",
            title="Plan Created"
        ))

        # Step 2: 空き時間の提出（10:00-18:00 からランダム）
        candidates = sorted(
            slot
            for offset in range((last_day - first_day).days + 1)
            for slot in quantize(
                datetime.combine(first_day + timedelta(days=offset), time(10, 0)),
                datetime.combine(first_day + timedelta(days=offset), time(18, 0))
            )
        )
        for participant_id in plan.participant_ids():
            chosen = rng.sample(candidates, k=max(1, len(candidates) // 2))
            await controller.submit_availability(plan.plan_id, participant_id, chosen)
            console.print(f"📝 {participant_id}: {len(chosen)}スロット提出")

        # Step 3: 重複集計
        report = await controller.aggregate(plan.plan_id)
        _display_report(report)

        # Step 4: 確定
        windows = await controller.suggest_meeting_windows(plan.plan_id)
        chosen_slot: Optional[Slot] = windows[0].start if windows else report.best_slots[0].slot
        plan = await controller.finalize(plan.plan_id, chosen_slot, actor="organizer")
        console.print(f"✅ 確定: {plan.finalized_slot} ({plan.status.value})", style="green")

    try:
        asyncio.run(_simulate())
    except SchedulingError as e:
        _fail(e)


if __name__ == "__main__":
    app()
