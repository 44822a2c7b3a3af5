"""
データモデル - Catchup Planner

このパッケージには、日程調整のためのコアエンティティモデルとリポジトリが含まれています。
"""

from .slot import Slot, SLOT_MINUTES, WORKING_DAY_START, WORKING_DAY_END, parse_slots
from .availability import ParticipantAvailability, SlotProvenance, AvailabilitySource
from .plan import Plan, PlanStatus, Invitee, AttendanceType, PLAN_TRANSITIONS, is_legal_transition
from .invite_link import InviteLink
from .repository import (
    PlanRepository,
    AvailabilityRepository,
    InviteLinkRepository,
    InMemoryPlanRepository,
    InMemoryAvailabilityRepository,
    InMemoryInviteLinkRepository,
    RepositoryError,
    DocumentNotFoundError,
    VersionConflictError,
)

__all__ = [
    # Slot関連
    "Slot",
    "SLOT_MINUTES",
    "WORKING_DAY_START",
    "WORKING_DAY_END",
    "parse_slots",

    # Availability関連
    "ParticipantAvailability",
    "SlotProvenance",
    "AvailabilitySource",

    # Plan関連
    "Plan",
    "PlanStatus",
    "Invitee",
    "AttendanceType",
    "PLAN_TRANSITIONS",
    "is_legal_transition",

    # InviteLink関連
    "InviteLink",

    # Repository関連
    "PlanRepository",
    "AvailabilityRepository",
    "InviteLinkRepository",
    "InMemoryPlanRepository",
    "InMemoryAvailabilityRepository",
    "InMemoryInviteLinkRepository",
    "RepositoryError",
    "DocumentNotFoundError",
    "VersionConflictError",
]
