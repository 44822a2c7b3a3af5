"""
Unit tests for the plan lifecycle controller.

Covers plan creation, availability submission, finalization races,
cancellation with token invalidation, archiving and reminders.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from freezegun import freeze_time

from catchup_planner.config import SchedulingSettings
from catchup_planner.errors import (
    IllegalTransitionError,
    NotFoundError,
    PartialCancellationError,
    TransientInfrastructureError,
    ValidationError,
)
from catchup_planner.integrations.message_sender import NotificationType
from catchup_planner.models.plan import AttendanceType, Plan, PlanStatus
from catchup_planner.models.repository import RepositoryError, VersionConflictError
from catchup_planner.scheduling.lifecycle import PlanLifecycleController
from catchup_planner.scheduling.retry import retry_transient

INVITEES = [
    {"contact_ref": "alice", "display_name": "Alice"},
    {"contact_ref": "bob", "display_name": "Bob"},
    {"contact_ref": "carol", "display_name": "Carol", "attendance_type": "nice_to_have"},
]


def token_of(link) -> str:
    return link.url.rsplit("/", 1)[1]


class TestPlanLifecycle:
    """Test plan creation, submission and status transitions."""

    @pytest.fixture
    def controller(self):
        """Create a controller backed by in-memory storage."""
        return PlanLifecycleController()

    @pytest.fixture
    def outbox(self, controller):
        """Messages recorded by the default gateway."""
        return controller.gateway.sender.outbox

    async def create(self, controller, **overrides):
        data = {
            "initiator_id": "host",
            "date_range_start": date(2025, 3, 10),
            "date_range_end": date(2025, 3, 12),
            "duration_minutes": 60,
            "invitees": INVITEES,
            "activity_type": "ランチ",
        }
        data.update(overrides)
        return await controller.create_plan(**data)

    # 作成

    @pytest.mark.asyncio
    async def test_create_plan_with_invitees(self, controller, outbox):
        """Plans with invitees start collecting and issue one link per invitee."""
        result = await self.create(controller)

        assert result.plan.status == PlanStatus.COLLECTING_AVAILABILITY
        assert [link.contact_ref for link in result.invite_links] == ["alice", "bob", "carol"]
        assert all("/availability/" in link.url for link in result.invite_links)
        assert len({token_of(link) for link in result.invite_links}) == 3
        assert sum(1 for m in outbox if m.notification_type == NotificationType.INVITATION) == 3

    @pytest.mark.asyncio
    async def test_create_plan_without_invitees_is_draft(self, controller):
        """Initiator-only plans start as drafts."""
        result = await self.create(controller, invitees=[])

        assert result.plan.status == PlanStatus.DRAFT
        assert result.invite_links == []

    @pytest.mark.asyncio
    async def test_fourteen_day_range_is_allowed(self, controller):
        """A range of exactly fourteen days is accepted."""
        result = await self.create(controller, date_range_end=date(2025, 3, 24))

        assert result.plan.date_range_days() == 14

    @pytest.mark.asyncio
    async def test_fifteen_day_range_is_rejected(self, controller):
        """A range longer than fourteen days fails before any write."""
        with pytest.raises(ValidationError):
            await self.create(controller, date_range_end=date(2025, 3, 25))

        assert controller.plans.count() == 0

    @pytest.mark.asyncio
    async def test_inverted_range_is_rejected(self, controller):
        """End before start is a validation error."""
        with pytest.raises(ValidationError):
            await self.create(controller, date_range_start=date(2025, 3, 12), date_range_end=date(2025, 3, 10))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("invitees", [
        [{"contact_ref": "alice"}, {"contact_ref": "alice"}],
        [{"contact_ref": "host"}],
        [{"contact_ref": ""}],
    ])
    async def test_invalid_invitees_are_rejected(self, controller, invitees):
        """Duplicate, blank or initiator invitees are rejected."""
        with pytest.raises(ValidationError):
            await self.create(controller, invitees=invitees)

    @pytest.mark.asyncio
    async def test_invalid_duration_is_rejected(self, controller):
        """Durations outside the working window are validation errors."""
        with pytest.raises(ValidationError):
            await self.create(controller, duration_minutes=0)

    @pytest.mark.asyncio
    async def test_get_unknown_plan(self, controller):
        """Unknown plan ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await controller.get_plan("missing")

    @pytest.mark.asyncio
    async def test_list_plans_hides_archived(self, controller):
        """Archived plans are only listed on request."""
        kept = await self.create(controller)
        archived = await self.create(controller)
        await controller.cancel(archived.plan.plan_id, actor="host")
        await controller.archive(archived.plan.plan_id)

        visible = await controller.list_plans("host")
        everything = await controller.list_plans("host", include_archived=True)

        assert [plan.plan_id for plan in visible] == [kept.plan.plan_id]
        assert len(everything) == 2

    # 空き時間

    @pytest.mark.asyncio
    async def test_submission_scenario(self, controller):
        """Initiator and one invitee share 09:00; 09:30 is listed but not perfect."""
        result = await self.create(controller, invitees=[{"contact_ref": "alice"}])
        plan_id = result.plan.plan_id

        await controller.submit_availability(plan_id, "host", ["2025-03-11_09:00", "2025-03-11_09:30"])
        await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00"])
        report = await controller.aggregate(plan_id)

        assert report.total_participants == 2
        assert report.perfect_count == 1
        assert report.best_slots[0].slot.canonical == "2025-03-11_09:00"
        assert report.entry_for("2025-03-11_09:30").classification.value != "perfect"
        assert (await controller.get_plan(plan_id)).status == PlanStatus.COLLECTING_AVAILABILITY

    @pytest.mark.asyncio
    async def test_has_responded_is_derived_from_submissions(self, controller):
        """Submitting availability marks the invitee as responded."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00"])
        plan = await controller.get_plan(plan_id)

        assert plan.get_invitee("alice").has_responded is True
        assert plan.get_invitee("bob").has_responded is False

    @pytest.mark.asyncio
    async def test_waiting_before_any_submission(self, controller):
        """Aggregation before any submission reports waiting."""
        result = await self.create(controller)

        report = await controller.aggregate(result.plan.plan_id)

        assert report.is_waiting is True
        assert report.best_slots == []

    @pytest.mark.asyncio
    async def test_slot_outside_date_range_is_rejected(self, controller):
        """Slots on days outside the plan range are rejected and nothing is stored."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        with pytest.raises(ValidationError):
            await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00", "2025-03-20_09:00"])

        assert await controller.store.find(plan_id, "alice") is None

    @pytest.mark.asyncio
    async def test_unknown_participant_is_rejected(self, controller):
        """Only the initiator and invitees may submit."""
        result = await self.create(controller)

        with pytest.raises(NotFoundError):
            await controller.submit_availability(result.plan.plan_id, "mallory", ["2025-03-11_09:00"])

    @pytest.mark.asyncio
    async def test_submission_after_finalize_is_rejected(self, controller):
        """Submissions are only accepted before finalization."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        await controller.finalize(plan_id, "2025-03-11_12:00", actor="host")

        with pytest.raises(IllegalTransitionError):
            await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00"])

    @pytest.mark.asyncio
    async def test_submission_racing_finalize_is_rolled_back(self, controller):
        """A submission written after a concurrent finalize restores the previous set."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00"])
        real_submit = controller.store.submit

        async def submit_after_finalize(*args, **kwargs):
            await controller.finalize(plan_id, "2025-03-11_12:00", actor="host")
            return await real_submit(*args, **kwargs)

        controller.store.submit = submit_after_finalize
        with pytest.raises(IllegalTransitionError):
            await controller.submit_availability(plan_id, "alice", ["2025-03-11_10:00"])

        stored = await controller.store.get(plan_id, "alice")
        assert stored.sorted_slots() == ["2025-03-11_09:00"]
        assert (await controller.get_plan(plan_id)).status == PlanStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_first_submission_racing_cancel_is_discarded(self, controller):
        """A first submission that lands on a cancelled plan leaves no record."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        real_submit = controller.store.submit

        async def submit_after_cancel(*args, **kwargs):
            await controller.cancel(plan_id, actor="host")
            return await real_submit(*args, **kwargs)

        controller.store.submit = submit_after_cancel
        with pytest.raises(IllegalTransitionError):
            await controller.submit_availability(plan_id, "bob", ["2025-03-11_10:00"])

        assert await controller.store.find(plan_id, "bob") is None

    @pytest.mark.asyncio
    async def test_submission_racing_invitee_removal_is_discarded(self, controller):
        """An invitee removed while submitting keeps no availability."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        real_submit = controller.store.submit

        async def submit_after_removal(*args, **kwargs):
            await controller.remove_invitee(plan_id, "carol")
            return await real_submit(*args, **kwargs)

        controller.store.submit = submit_after_removal
        with pytest.raises(NotFoundError):
            await controller.submit_availability(plan_id, "carol", ["2025-03-11_10:00"])

        assert await controller.store.find(plan_id, "carol") is None

    @pytest.mark.asyncio
    async def test_ready_notification_is_sent_once(self, controller, outbox):
        """The initiator is told once when every must-attend invitee has responded."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00"])
        assert not await controller.is_ready_to_finalize(plan_id)

        await controller.submit_availability(plan_id, "bob", ["2025-03-11_09:00"])
        await controller.submit_availability(plan_id, "bob", ["2025-03-11_10:00"])
        await controller.submit_availability(plan_id, "carol", ["2025-03-11_10:00"])

        ready = [m for m in outbox if m.notification_type == NotificationType.PLAN_READY]
        submitted = [m for m in outbox if m.notification_type == NotificationType.AVAILABILITY_SUBMITTED]
        assert await controller.is_ready_to_finalize(plan_id)
        assert len(ready) == 1
        assert ready[0].recipient == "host"
        assert len(submitted) == 4

    @pytest.mark.asyncio
    async def test_token_submission(self, controller):
        """Invitees can submit through their invite link."""
        result = await self.create(controller)
        link = result.invite_links[0]

        await controller.submit_availability_with_token(token_of(link), ["2025-03-11_09:00"])
        availability = await controller.get_availability(result.plan.plan_id)

        assert availability.initiator_availability == []
        assert [entry.participant_id for entry in availability.availability] == ["alice"]
        assert availability.availability[0].available_slots == ["2025-03-11_09:00"]

    @pytest.mark.asyncio
    async def test_unknown_token(self, controller):
        """An unknown token is indistinguishable from an invalidated one."""
        with pytest.raises(NotFoundError):
            await controller.submit_availability_with_token("nope", ["2025-03-11_09:00"])

    # 確定

    @pytest.mark.asyncio
    async def test_finalize(self, controller, outbox):
        """Finalizing records the chosen slot, the actor and notifies everyone."""
        result = await self.create(controller)

        plan = await controller.finalize(result.plan.plan_id, "2025-03-11_12:00", actor="host")

        assert plan.status == PlanStatus.SCHEDULED
        assert plan.finalized_slot.canonical == "2025-03-11_12:00"
        assert plan.finalized_by == "host"
        finalized = [m for m in outbox if m.notification_type == NotificationType.PLAN_FINALIZED]
        assert {m.recipient for m in finalized} == {"host", "alice", "bob", "carol"}

    @pytest.mark.asyncio
    async def test_finalize_non_perfect_slot_is_allowed(self, controller):
        """The initiator may pick a slot nobody else marked."""
        result = await self.create(controller)
        await controller.submit_availability(result.plan.plan_id, "alice", ["2025-03-11_09:00"])

        plan = await controller.finalize(result.plan.plan_id, "2025-03-12_15:00", actor="host")

        assert plan.finalized_slot.canonical == "2025-03-12_15:00"

    @pytest.mark.asyncio
    async def test_finalize_outside_range_leaves_status(self, controller):
        """A slot outside the range is rejected without changing status."""
        result = await self.create(controller)

        with pytest.raises(ValidationError):
            await controller.finalize(result.plan.plan_id, "2025-03-20_12:00", actor="host")

        assert (await controller.get_plan(result.plan.plan_id)).status == PlanStatus.COLLECTING_AVAILABILITY

    @pytest.mark.asyncio
    async def test_finalize_meeting_past_working_window(self, controller):
        """A 60 minute meeting cannot be finalized at 20:30."""
        result = await self.create(controller)

        with pytest.raises(ValidationError):
            await controller.finalize(result.plan.plan_id, "2025-03-11_20:30", actor="host")

    @pytest.mark.asyncio
    async def test_finalize_requires_actor(self, controller):
        """A blank actor is rejected."""
        result = await self.create(controller)

        with pytest.raises(ValidationError):
            await controller.finalize(result.plan.plan_id, "2025-03-11_12:00", actor=" ")

    @pytest.mark.asyncio
    async def test_finalize_twice(self, controller):
        """Finalizing a scheduled plan reports the current status."""
        result = await self.create(controller)
        await controller.finalize(result.plan.plan_id, "2025-03-11_12:00", actor="host")

        with pytest.raises(IllegalTransitionError) as exc_info:
            await controller.finalize(result.plan.plan_id, "2025-03-11_13:00", actor="host")

        assert exc_info.value.current_status == "scheduled"

    @pytest.mark.asyncio
    async def test_concurrent_finalize(self, controller):
        """Of two concurrent finalizations exactly one succeeds."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        outcomes = await asyncio.gather(
            controller.finalize(plan_id, "2025-03-11_12:00", actor="host"),
            controller.finalize(plan_id, "2025-03-12_12:00", actor="host"),
            return_exceptions=True
        )

        successes = [outcome for outcome in outcomes if isinstance(outcome, Plan)]
        failures = [outcome for outcome in outcomes if isinstance(outcome, IllegalTransitionError)]
        assert len(successes) == 1
        assert len(failures) == 1
        stored = await controller.get_plan(plan_id)
        assert stored.finalized_slot == successes[0].finalized_slot

    @pytest.mark.asyncio
    async def test_concurrent_finalize_and_cancel(self, controller):
        """Finalize and cancel racing leave exactly one terminal outcome."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        outcomes = await asyncio.gather(
            controller.finalize(plan_id, "2025-03-11_12:00", actor="host"),
            controller.cancel(plan_id, actor="host"),
            return_exceptions=True
        )

        stored = await controller.get_plan(plan_id)
        if isinstance(outcomes[0], Plan):
            # 確定後のキャンセルは有効な遷移
            assert stored.status in (PlanStatus.SCHEDULED, PlanStatus.CANCELLED)
        else:
            assert isinstance(outcomes[0], IllegalTransitionError)
            assert stored.status == PlanStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_version_conflict_is_retried(self, controller):
        """A lost compare-and-set re-reads the plan and tries again."""
        result = await self.create(controller)
        real_replace = controller.plans.replace
        attempts = []

        async def flaky_replace(plan, expected_version):
            attempts.append(expected_version)
            if len(attempts) == 1:
                raise VersionConflictError(plan.plan_id, expected_version, expected_version + 1)
            return await real_replace(plan, expected_version)

        controller.plans.replace = flaky_replace
        plan = await controller.finalize(result.plan.plan_id, "2025-03-11_12:00", actor="host")

        assert plan.status == PlanStatus.SCHEDULED
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_persistent_version_conflict(self, controller):
        """Exhausting the attempts surfaces a transient error."""
        result = await self.create(controller)
        controller.plans.replace = AsyncMock(side_effect=VersionConflictError(result.plan.plan_id, 0, 1))

        with pytest.raises(TransientInfrastructureError):
            await controller.cancel(result.plan.plan_id, actor="host")

        assert controller.plans.replace.await_count == controller.settings.max_transition_attempts

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_finalize(self, controller):
        """A notification outage is logged, not raised."""
        result = await self.create(controller)

        with patch.object(controller.gateway, "notify_finalized",
                          AsyncMock(side_effect=TransientInfrastructureError("down"))):
            plan = await controller.finalize(result.plan.plan_id, "2025-03-11_12:00", actor="host")

        assert plan.status == PlanStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_complete(self, controller):
        """Scheduled plans can be completed; collecting plans cannot."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        with pytest.raises(IllegalTransitionError):
            await controller.complete(plan_id)

        await controller.finalize(plan_id, "2025-03-11_12:00", actor="host")
        plan = await controller.complete(plan_id)

        assert plan.status == PlanStatus.COMPLETED

    # キャンセル

    @pytest.mark.asyncio
    async def test_cancel_invalidates_tokens(self, controller, outbox):
        """After cancelling, invite tokens no longer resolve."""
        result = await self.create(controller)

        plan = await controller.cancel(result.plan.plan_id, actor="host")

        assert plan.status == PlanStatus.CANCELLED
        with pytest.raises(NotFoundError):
            await controller.submit_availability_with_token(token_of(result.invite_links[0]), [])
        cancelled = [m for m in outbox if m.notification_type == NotificationType.PLAN_CANCELLED]
        assert len(cancelled) == 4

    @pytest.mark.asyncio
    async def test_cancel_terminal_plan(self, controller):
        """Completed and cancelled plans cannot be cancelled."""
        result = await self.create(controller)
        await controller.cancel(result.plan.plan_id, actor="host")

        with pytest.raises(IllegalTransitionError) as exc_info:
            await controller.cancel(result.plan.plan_id, actor="host")

        assert exc_info.value.current_status == "cancelled"

    @pytest.mark.asyncio
    async def test_partial_cancellation_and_retry(self, controller):
        """Cancellation sticks even when token invalidation fails; retry completes it."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        with patch.object(controller.gateway, "invalidate_tokens",
                          AsyncMock(side_effect=RepositoryError("storage down"))):
            with pytest.raises(PartialCancellationError) as exc_info:
                await controller.cancel(plan_id, actor="host")

        assert exc_info.value.plan_id == plan_id
        assert (await controller.get_plan(plan_id)).status == PlanStatus.CANCELLED

        invalidated = await controller.retry_token_invalidation(plan_id)

        assert invalidated == 3
        with pytest.raises(NotFoundError):
            await controller.submit_availability_with_token(token_of(result.invite_links[1]), [])

    @pytest.mark.asyncio
    async def test_retry_invalidation_requires_cancelled_plan(self, controller):
        """Only cancelled plans can retry token invalidation."""
        result = await self.create(controller)

        with pytest.raises(IllegalTransitionError):
            await controller.retry_token_invalidation(result.plan.plan_id)

    @pytest.mark.asyncio
    async def test_cancel_scheduled_plan_invalidates_every_token(self, controller):
        """Cancelling a finalized plan leaves no invite token usable."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        await controller.finalize(plan_id, "2025-03-11_12:00", actor="host")

        plan = await controller.cancel(plan_id, actor="host")

        assert plan.status == PlanStatus.CANCELLED
        for link in result.invite_links:
            with pytest.raises(NotFoundError):
                await controller.submit_availability_with_token(token_of(link), ["2025-03-11_09:00"])

    @pytest.mark.asyncio
    async def test_cancel_under_retry_reports_partial_cancellation(self, controller):
        """retry_transient does not re-run a cancel whose invalidation failed."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        real_invalidate = controller.gateway.invalidate_tokens
        calls = []

        async def flaky_invalidate(target_plan_id):
            calls.append(target_plan_id)
            if len(calls) <= 2:
                raise RepositoryError("storage down")
            return await real_invalidate(target_plan_id)

        controller.gateway.invalidate_tokens = flaky_invalidate
        with patch("catchup_planner.scheduling.retry.asyncio.sleep", AsyncMock()):
            with pytest.raises(PartialCancellationError):
                await retry_transient(lambda: controller.cancel(plan_id, actor="host"))
            invalidated = await retry_transient(lambda: controller.retry_token_invalidation(plan_id))

        assert len(calls) == 3
        assert invalidated == 3
        with pytest.raises(NotFoundError):
            await controller.submit_availability_with_token(token_of(result.invite_links[0]), [])

    @pytest.mark.asyncio
    async def test_unexpected_invalidation_error_is_not_partial_cancellation(self, controller):
        """Only storage failures are reported as a partial cancellation."""
        result = await self.create(controller)

        with patch.object(controller.gateway, "invalidate_tokens", AsyncMock(side_effect=AttributeError("links"))):
            with pytest.raises(AttributeError):
                await controller.cancel(result.plan.plan_id, actor="host")

    # アーカイブ

    @pytest.mark.asyncio
    async def test_archive_requires_terminal_status(self, controller):
        """Active plans cannot be archived."""
        result = await self.create(controller)

        with pytest.raises(IllegalTransitionError):
            await controller.archive(result.plan.plan_id)

    @pytest.mark.asyncio
    async def test_archive_and_unarchive(self, controller):
        """Archiving keeps the status and is idempotent."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        await controller.finalize(plan_id, "2025-03-11_12:00", actor="host")
        await controller.complete(plan_id)

        archived = await controller.archive(plan_id)
        again = await controller.archive(plan_id)

        assert archived.status == PlanStatus.COMPLETED
        assert archived.archived_at is not None
        assert again.archived_at == archived.archived_at

        restored = await controller.unarchive(plan_id)
        assert restored.archived_at is None
        assert (await controller.unarchive(plan_id)).archived_at is None

    @pytest.mark.asyncio
    async def test_auto_archive_after_retention_window(self, controller):
        """Terminal plans are archived once seven days have passed."""
        with freeze_time("2025-03-01 00:00:00"):
            cancelled = await self.create(controller)
            await controller.cancel(cancelled.plan.plan_id, actor="host")
            scheduled = await self.create(controller)
            await controller.finalize(scheduled.plan.plan_id, "2025-03-11_12:00", actor="host")

        too_early = await controller.auto_archive(now=datetime(2025, 3, 7, 23, 59, tzinfo=timezone.utc))
        archived = await controller.auto_archive(now=datetime(2025, 3, 8, 0, 0, 1, tzinfo=timezone.utc))
        repeated = await controller.auto_archive(now=datetime(2025, 3, 9, tzinfo=timezone.utc))

        assert too_early == 0
        assert archived == 1
        assert repeated == 0
        assert (await controller.get_plan(cancelled.plan.plan_id)).is_archived()
        assert not (await controller.get_plan(scheduled.plan.plan_id)).is_archived()

    @pytest.mark.asyncio
    async def test_auto_archive_uses_current_time(self, controller):
        """Without an explicit reference time the clock is used."""
        with freeze_time("2025-03-01 00:00:00"):
            result = await self.create(controller)
            await controller.cancel(result.plan.plan_id, actor="host")

        with freeze_time("2025-03-10 00:00:00"):
            assert await controller.auto_archive() == 1

    @pytest.mark.asyncio
    async def test_auto_archive_skips_plan_archived_concurrently(self, controller):
        """A plan archived by someone else during the sweep is not counted."""
        with freeze_time("2025-03-01 00:00:00"):
            result = await self.create(controller)
            await controller.cancel(result.plan.plan_id, actor="host")

        real_replace = controller.plans.replace
        raced = []

        async def replace_after_manual_archive(plan, expected_version):
            if not raced:
                raced.append(plan.plan_id)
                await controller.archive(plan.plan_id)
            return await real_replace(plan, expected_version)

        controller.plans.replace = replace_after_manual_archive
        archived = await controller.auto_archive(now=datetime(2025, 3, 9, tzinfo=timezone.utc))

        assert archived == 0
        assert (await controller.get_plan(result.plan.plan_id)).is_archived()

    # 編集

    @pytest.mark.asyncio
    async def test_update_plan(self, controller):
        """Editable fields can be changed before finalization."""
        result = await self.create(controller)

        plan = await controller.update_plan(
            result.plan.plan_id,
            location="渋谷",
            duration_minutes=90,
            date_range_start=date(2025, 3, 13),
            date_range_end=date(2025, 3, 15)
        )

        assert plan.location == "渋谷"
        assert plan.duration_minutes == 90
        assert (plan.date_range_start, plan.date_range_end) == (date(2025, 3, 13), date(2025, 3, 15))
        assert plan.version == result.plan.version + 1

    @pytest.mark.asyncio
    async def test_update_plan_range_too_long(self, controller):
        """Updates obey the fourteen day limit."""
        result = await self.create(controller)

        with pytest.raises(ValidationError):
            await controller.update_plan(result.plan.plan_id, date_range_end=date(2025, 3, 30))

    @pytest.mark.asyncio
    async def test_update_scheduled_plan(self, controller):
        """Scheduled plans are no longer editable."""
        result = await self.create(controller)
        await controller.finalize(result.plan.plan_id, "2025-03-11_12:00", actor="host")

        with pytest.raises(IllegalTransitionError):
            await controller.update_plan(result.plan.plan_id, notes="late change")

    @pytest.mark.asyncio
    async def test_extend_date_range(self, controller):
        """The range end can move out to the fourteen day limit."""
        result = await self.create(controller)

        plan = await controller.extend_date_range(result.plan.plan_id, date(2025, 3, 24))

        assert plan.date_range_end == date(2025, 3, 24)
        with pytest.raises(ValidationError):
            await controller.extend_date_range(result.plan.plan_id, date(2025, 3, 25))

    @pytest.mark.asyncio
    async def test_add_invitee_to_draft(self, controller):
        """Adding the first invitee moves a draft into collecting."""
        result = await self.create(controller, invitees=[])
        plan_id = result.plan.plan_id

        link = await controller.add_invitee(plan_id, "dave", "Dave", AttendanceType.NICE_TO_HAVE)

        plan = await controller.get_plan(plan_id)
        assert link.contact_ref == "dave"
        assert "/availability/" in link.url
        assert plan.status == PlanStatus.COLLECTING_AVAILABILITY
        assert plan.get_invitee("dave").attendance_type == AttendanceType.NICE_TO_HAVE

    @pytest.mark.asyncio
    async def test_add_duplicate_invitee(self, controller):
        """Invitees and the initiator cannot be added twice."""
        result = await self.create(controller)

        with pytest.raises(ValidationError):
            await controller.add_invitee(result.plan.plan_id, "alice")
        with pytest.raises(ValidationError):
            await controller.add_invitee(result.plan.plan_id, "host")

    @pytest.mark.asyncio
    async def test_remove_invitee(self, controller):
        """Removed invitees lose their link and drop out of aggregation."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        await controller.submit_availability(plan_id, "host", ["2025-03-11_09:00"])
        await controller.submit_availability(plan_id, "carol", [])

        plan = await controller.remove_invitee(plan_id, "carol")
        report = await controller.aggregate(plan_id)

        assert [invitee.contact_ref for invitee in plan.invitees] == ["alice", "bob"]
        assert report.total_participants == 1
        with pytest.raises(NotFoundError):
            await controller.submit_availability_with_token(token_of(result.invite_links[2]), [])

    @pytest.mark.asyncio
    async def test_remove_last_or_unknown_invitee(self, controller):
        """The last invitee stays; unknown invitees are not found."""
        result = await self.create(controller, invitees=[{"contact_ref": "alice"}])

        with pytest.raises(ValidationError):
            await controller.remove_invitee(result.plan.plan_id, "alice")
        with pytest.raises(NotFoundError):
            await controller.remove_invitee(result.plan.plan_id, "zed")

    @pytest.mark.asyncio
    async def test_readded_invitee_starts_without_availability(self, controller, outbox):
        """Removing an invitee discards their submission, so re-adding them starts fresh."""
        result = await self.create(controller, invitees=[{"contact_ref": "alice"}, {"contact_ref": "bob"}])
        plan_id = result.plan.plan_id
        await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00"])

        await controller.remove_invitee(plan_id, "alice")
        link = await controller.add_invitee(plan_id, "alice")
        plan = await controller.get_plan(plan_id)
        report = await controller.aggregate(plan_id)

        assert plan.get_invitee("alice").has_responded is False
        assert report.is_waiting is True
        assert await controller.store.find(plan_id, "alice") is None

        await controller.submit_availability(plan_id, "bob", ["2025-03-11_09:00"])
        await controller.submit_availability_with_token(token_of(link), ["2025-03-11_09:00"])

        ready = [m for m in outbox if m.notification_type == NotificationType.PLAN_READY]
        assert len(ready) == 1

    @pytest.mark.asyncio
    async def test_update_invitee_attendance(self, controller):
        """Downgrading the only pending must-attend invitee makes the plan ready."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        await controller.submit_availability(plan_id, "alice", ["2025-03-11_09:00"])

        await controller.update_invitee_attendance(plan_id, "bob", AttendanceType.NICE_TO_HAVE)

        assert await controller.is_ready_to_finalize(plan_id)
        with pytest.raises(ValidationError):
            await controller.update_invitee_attendance(plan_id, "bob", "maybe")

    @pytest.mark.asyncio
    async def test_conflicts_and_meeting_windows(self, controller):
        """Conflict analysis and meeting windows read the current submissions."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id
        for participant in ("host", "alice", "bob"):
            await controller.submit_availability(plan_id, participant, ["2025-03-11_10:00", "2025-03-11_10:30"])

        analysis = await controller.analyze_conflicts(plan_id)
        windows = await controller.suggest_meeting_windows(plan_id)

        assert analysis.has_perfect_overlap
        assert [window.start.canonical for window in windows] == ["2025-03-11_10:00"]


class TestReminders:
    """Test reminder delivery and cooldown."""

    @pytest.fixture
    def controller(self):
        return PlanLifecycleController(settings=SchedulingSettings(reminder_cooldown_minutes=60))

    async def create(self, controller):
        return await controller.create_plan(
            initiator_id="host",
            date_range_start=date(2025, 3, 10),
            date_range_end=date(2025, 3, 12),
            duration_minutes=60,
            invitees=INVITEES
        )

    @pytest.mark.asyncio
    async def test_reminders_go_to_pending_invitees(self, controller):
        """Only invitees who have not responded are reminded."""
        result = await self.create(controller)
        await controller.submit_availability(result.plan.plan_id, "alice", ["2025-03-11_09:00"])

        reminder = await controller.send_reminders(result.plan.plan_id)

        assert reminder.reminders_sent == 2
        assert reminder.pending_invitees == ["Bob", "Carol"]
        sent = controller.gateway.sender.outbox
        assert {m.recipient for m in sent if m.notification_type == NotificationType.REMINDER} == {"bob", "carol"}

    @pytest.mark.asyncio
    async def test_cooldown(self, controller):
        """A second reminder inside the cooldown window is rejected."""
        result = await self.create(controller)
        plan_id = result.plan.plan_id

        with freeze_time("2025-03-01 10:00:00") as frozen:
            await controller.send_reminders(plan_id)

            frozen.tick(timedelta(minutes=59))
            with pytest.raises(ValidationError):
                await controller.send_reminders(plan_id)

            frozen.tick(timedelta(minutes=2))
            reminder = await controller.send_reminders(plan_id)

        assert reminder.reminders_sent == 3

    @pytest.mark.asyncio
    async def test_nothing_pending(self, controller):
        """When everyone has responded there is nobody to remind."""
        result = await self.create(controller)
        for invitee in INVITEES:
            await controller.submit_availability(result.plan.plan_id, invitee["contact_ref"], [])

        with pytest.raises(ValidationError):
            await controller.send_reminders(result.plan.plan_id)
