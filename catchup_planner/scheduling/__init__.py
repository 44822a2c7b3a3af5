"""
日程調整コア - Catchup Planner

スロット量子化、空き時間ストア、重複集計、プランライフサイクル管理を提供します。
"""

from .quantizer import quantize, slots_from_free_ranges, meeting_slots
from .availability_store import AvailabilityStore
from .overlap import (
    OverlapAggregator,
    OverlapReport,
    OverlapClass,
    SlotCount,
    ConflictAnalysis,
    compute_overlap,
    analyze_conflicts,
    rank_meeting_windows,
)
from .lifecycle import PlanLifecycleController, CreatePlanResult, InviteLinkInfo
from .retry import retry_transient

__all__ = [
    # 量子化
    "quantize",
    "slots_from_free_ranges",
    "meeting_slots",

    # 空き時間
    "AvailabilityStore",

    # 重複集計
    "OverlapAggregator",
    "OverlapReport",
    "OverlapClass",
    "SlotCount",
    "ConflictAnalysis",
    "compute_overlap",
    "analyze_conflicts",
    "rank_meeting_windows",

    # ライフサイクル
    "PlanLifecycleController",
    "CreatePlanResult",
    "InviteLinkInfo",

    # リトライ
    "retry_transient",
]
