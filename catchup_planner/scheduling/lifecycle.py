"""
プランライフサイクル管理

プランのステータス遷移（draft → collecting_availability → scheduled → completed、
非終了状態からの cancelled、ステータスと独立したアーカイブフラグ）を管理します。

プランの更新はすべて version によるチェック・アンド・セットで行い、
競合時は再読み込みして遷移を再検証します。そのため同時に実行された
2つの finalize（または finalize と cancel）は片方だけが成功し、
もう片方は IllegalTransitionError になります。
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..config import SchedulingSettings
from ..errors import (
    IllegalTransitionError,
    NotFoundError,
    PartialCancellationError,
    TransientInfrastructureError,
    ValidationError,
)
from ..integrations.invite_gateway import InviteLinkGateway, InviteNotificationGateway
from ..models.availability import AvailabilitySource, ParticipantAvailability
from ..models.invite_link import InviteLink
from ..models.plan import (
    AttendanceType,
    Invitee,
    Plan,
    PlanStatus,
    TERMINAL_STATUSES,
    retention_cutoff,
)
from ..models.repository import PlanRepository, InMemoryPlanRepository, VersionConflictError
from ..models.slot import Slot, parse_slots
from .availability_store import AvailabilityStore
from .overlap import (
    ConflictAnalysis,
    MeetingWindow,
    OverlapAggregator,
    OverlapReport,
    analyze_conflicts,
    count_slots,
    rank_meeting_windows,
)
from .quantizer import meeting_slots

logger = logging.getLogger(__name__)


class InviteLinkInfo(BaseModel):
    """発行された招待リンク"""
    contact_ref: str
    display_name: Optional[str] = None
    attendance_type: AttendanceType = AttendanceType.MUST_ATTEND
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_ref": self.contact_ref,
            "display_name": self.display_name,
            "attendance_type": self.attendance_type.value,
            "url": self.url,
        }


class CreatePlanResult(BaseModel):
    """プラン作成結果"""
    plan: Plan
    invite_links: List[InviteLinkInfo] = Field(default_factory=list)


class ParticipantSlots(BaseModel):
    """参加者の空きスロット"""
    participant_id: str
    available_slots: List[str] = Field(default_factory=list)


class PlanAvailability(BaseModel):
    """プランの空き時間一覧"""
    initiator_availability: List[str] = Field(default_factory=list)
    availability: List[ParticipantSlots] = Field(default_factory=list)


class ReminderResult(BaseModel):
    """リマインダー送信結果"""
    reminders_sent: int
    pending_invitees: List[str] = Field(default_factory=list)


Mutation = Callable[[Plan], Optional[bool]]


class PlanLifecycleController:
    """プランライフサイクル管理"""

    def __init__(
        self,
        plan_repository: Optional[PlanRepository] = None,
        availability_store: Optional[AvailabilityStore] = None,
        gateway: Optional[InviteNotificationGateway] = None,
        settings: Optional[SchedulingSettings] = None
    ):
        """
        プランライフサイクル管理を初期化

        Args:
            plan_repository: プランリポジトリ（未指定時はインメモリ）
            availability_store: 空き時間ストア（未指定時はインメモリ）
            gateway: 招待・通知ゲートウェイ（未指定時は招待リンクゲートウェイ）
            settings: 日程調整設定
        """
        self.settings = settings or SchedulingSettings()
        self.plans = plan_repository or InMemoryPlanRepository()
        self.store = availability_store or AvailabilityStore()
        self.aggregator = OverlapAggregator(self.store, self.settings.overlap)
        self.gateway = gateway or InviteLinkGateway(
            base_url=self.settings.base_url,
            expiry_days=self.settings.invite_link_expiry_days
        )

    # 読み込み・更新の共通処理

    async def get_plan(self, plan_id: str) -> Plan:
        """プランを取得（回答状況は空き時間ストアから導出）"""
        plan = await self.plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"プランが見つかりません: {plan_id}")
        return await self._with_responses(plan)

    async def _with_responses(self, plan: Plan) -> Plan:
        records = await self.store.get_all(plan.plan_id)
        for invitee in plan.invitees:
            invitee.has_responded = invitee.contact_ref in records
        return plan

    async def _mutate(self, plan_id: str, mutation: Mutation, operation: str) -> Plan:
        """
        チェック・アンド・セットでプランを更新

        mutation は読み込んだプランを検証・変更します（False を返すと変更なしとして書き込みません）。
        バージョン競合時はプランを再読み込みして mutation をやり直します。
        """
        attempts = self.settings.max_transition_attempts
        for attempt in range(attempts):
            plan = await self.get_plan(plan_id)
            expected_version = plan.version

            try:
                if mutation(plan) is False:
                    return plan
            except PydanticValidationError as e:
                raise ValidationError(f"{operation}: {e}")

            plan.update_timestamp()
            try:
                saved = await self.plans.replace(plan, expected_version=expected_version)
            except VersionConflictError as e:
                logger.info(f"{operation} のバージョン競合のため再試行 ({attempt + 1}/{attempts}): {e}")
                continue
            return await self._with_responses(saved)

        raise TransientInfrastructureError(
            f"プラン {plan_id} の {operation} が競合により{attempts}回失敗しました"
        )

    async def _notify(self, description: str, notification: Callable[[], Awaitable[Any]]) -> None:
        """通知の失敗は操作全体を失敗させない"""
        try:
            await notification()
        except TransientInfrastructureError as e:
            logger.warning(f"{description}の通知に失敗しました: {e}")

    def _validate_date_range(self, start: date, end: date) -> None:
        if end < start:
            raise ValidationError("終了日は開始日以降である必要があります")
        if (end - start).days > self.settings.max_date_range_days:
            raise ValidationError(f"候補期間は{self.settings.max_date_range_days}日以内である必要があります")

    def _coerce_slot(self, value: Union[str, Slot, datetime], plan: Plan) -> Slot:
        if isinstance(value, datetime):
            return Slot.from_datetime(value, plan.tz)
        return Slot.parse(value)

    # プラン作成・参照

    async def create_plan(
        self,
        initiator_id: str,
        date_range_start: date,
        date_range_end: date,
        duration_minutes: int,
        invitees: Iterable[Union[Invitee, Dict[str, Any]]] = (),
        activity_type: Optional[str] = None,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        timezone_name: Optional[str] = None
    ) -> CreatePlanResult:
        """
        プランを作成し、招待者ごとにアクセストークンを発行

        招待者がいる場合は collecting_availability、いない場合は draft で開始します。

        Raises:
            ValidationError: 候補期間・時間・招待者の不正
        """
        self._validate_date_range(date_range_start, date_range_end)

        try:
            invitee_models = [
                invitee if isinstance(invitee, Invitee) else Invitee(**invitee)
                for invitee in invitees
            ]
            contact_refs = [invitee.contact_ref for invitee in invitee_models]
            if len(set(contact_refs)) != len(contact_refs):
                raise ValidationError("招待者が重複しています")
            if initiator_id in contact_refs:
                raise ValidationError("主催者を招待者に含めることはできません")

            plan = Plan(
                initiator_id=initiator_id,
                activity_type=activity_type,
                duration_minutes=duration_minutes,
                date_range_start=date_range_start,
                date_range_end=date_range_end,
                location=location,
                notes=notes,
                timezone=timezone_name or self.settings.default_timezone,
                invitees=invitee_models,
                status=PlanStatus.COLLECTING_AVAILABILITY if invitee_models else PlanStatus.DRAFT
            )
        except PydanticValidationError as e:
            raise ValidationError(f"プランの入力が不正です: {e}")

        plan = await self.plans.create(plan)
        logger.info(f"プランを作成: {plan.plan_id} (主催者 {initiator_id}, 招待者 {len(plan.invitees)}人)")

        invite_links = []
        for invitee in plan.invitees:
            invite_links.append(await self._issue_link(plan, invitee))

        return CreatePlanResult(plan=plan, invite_links=invite_links)

    async def _issue_link(self, plan: Plan, invitee: Invitee) -> InviteLinkInfo:
        link: InviteLink = await self.gateway.issue_token(plan, invitee.contact_ref)
        return InviteLinkInfo(
            contact_ref=invitee.contact_ref,
            display_name=invitee.display_name,
            attendance_type=invitee.attendance_type,
            url=link.url(self.settings.base_url)
        )

    async def list_plans(self, initiator_id: str, include_archived: bool = False) -> List[Plan]:
        """主催者のプラン一覧"""
        plans = await self.plans.list_by_initiator(initiator_id, include_archived=include_archived)
        return [await self._with_responses(plan) for plan in plans]

    # 空き時間

    async def submit_availability(
        self,
        plan_id: str,
        participant_id: str,
        slots: Iterable,
        source: AvailabilitySource = AvailabilitySource.MANUAL,
        calendar_slots: Optional[Iterable] = None,
        manual_slots: Optional[Iterable] = None
    ) -> ParticipantAvailability:
        """
        参加者の空き時間を提出

        ステータスは変更しません。必須参加者全員の回答が初めて揃った時点で主催者に通知します。

        Raises:
            IllegalTransitionError: draft / collecting_availability 以外
            NotFoundError: プランまたは参加者が存在しない
            ValidationError: 不正なスロット、候補期間外の日付
        """
        plan = await self.get_plan(plan_id)
        plan.ensure_editable("submit_availability")

        if not plan.is_participant(participant_id):
            raise NotFoundError(f"参加者 {participant_id} はプラン {plan_id} に招待されていません")

        parsed = parse_slots(slots)
        outside = sorted(slot for slot in parsed if not plan.contains_date(slot.day))
        if outside:
            raise ValidationError(
                f"候補期間外のスロットが含まれています: {[slot.canonical for slot in outside]}"
            )

        was_ready = plan.all_must_attend_responded()
        previous = await self.store.find(plan_id, participant_id)

        record = await self.store.submit(
            plan_id,
            participant_id,
            parsed,
            source=source,
            calendar_slots=calendar_slots,
            manual_slots=manual_slots
        )

        # 書き込みまでの間に確定・キャンセル・招待者削除が反映されていたら提出を取り消す
        plan = await self.get_plan(plan_id)
        try:
            plan.ensure_editable("submit_availability")
        except IllegalTransitionError:
            await self.store.restore(plan_id, participant_id, previous)
            raise
        if not plan.is_participant(participant_id):
            await self.store.remove(plan_id, participant_id)
            raise NotFoundError(f"参加者 {participant_id} はプラン {plan_id} から削除されました")

        if participant_id != plan.initiator_id:
            await self._notify(
                "空き時間提出",
                lambda: self.gateway.notify_availability_submitted(plan, participant_id)
            )

            if not was_ready and plan.all_must_attend_responded():
                logger.info(f"必須参加者全員が回答しました: {plan_id}")
                await self._notify("確定可能", lambda: self.gateway.notify_plan_ready(plan))

        return record

    async def submit_availability_with_token(
        self,
        token: str,
        slots: Iterable,
        source: AvailabilitySource = AvailabilitySource.MANUAL,
        calendar_slots: Optional[Iterable] = None,
        manual_slots: Optional[Iterable] = None
    ) -> ParticipantAvailability:
        """招待トークン経由で空き時間を提出（無効なトークンはNotFoundError）"""
        link = await self.gateway.resolve_token(token)
        record = await self.submit_availability(
            link.plan_id,
            link.contact_ref,
            slots,
            source=source,
            calendar_slots=calendar_slots,
            manual_slots=manual_slots
        )
        await self.gateway.mark_submitted(token)
        return record

    async def get_availability(self, plan_id: str) -> PlanAvailability:
        """主催者と現在の招待者の空き時間"""
        plan = await self.get_plan(plan_id)
        records = await self.store.get_all(plan_id)

        initiator = records.get(plan.initiator_id)
        return PlanAvailability(
            initiator_availability=initiator.sorted_slots() if initiator else [],
            availability=[
                ParticipantSlots(
                    participant_id=invitee.contact_ref,
                    available_slots=records[invitee.contact_ref].sorted_slots()
                )
                for invitee in plan.invitees
                if invitee.contact_ref in records
            ]
        )

    async def aggregate(self, plan_id: str) -> OverlapReport:
        """主催者と現在の招待者の重複レポート"""
        plan = await self.get_plan(plan_id)
        return await self.aggregator.aggregate(plan_id, plan.participant_ids())

    async def analyze_conflicts(self, plan_id: str) -> ConflictAnalysis:
        """必須参加者ベースの競合分析"""
        plan = await self.get_plan(plan_id)
        sets = await self.aggregator.collect(plan_id, plan.participant_ids())
        return analyze_conflicts(plan, sets)

    async def suggest_meeting_windows(self, plan_id: str, limit: int = 5) -> List[MeetingWindow]:
        """予定時間全体が空いている開始スロットの候補"""
        plan = await self.get_plan(plan_id)
        sets = await self.aggregator.collect(plan_id, plan.participant_ids())
        counts = {slot: len(participants) for slot, participants in count_slots(sets).items()}
        return rank_meeting_windows(counts, plan.duration_minutes)[:limit]

    async def is_ready_to_finalize(self, plan_id: str) -> bool:
        """必須参加の招待者が全員回答済みか"""
        plan = await self.get_plan(plan_id)
        return plan.all_must_attend_responded()

    # ステータス遷移

    async def finalize(self, plan_id: str, chosen_time: Union[str, Slot, datetime], actor: str) -> Plan:
        """
        日程を確定

        選択スロットは perfect である必要はありません（主催者による手動選択）。

        Raises:
            IllegalTransitionError: draft / collecting_availability 以外
            ValidationError: 候補期間外、または予定時間が作業時間帯に収まらない
        """
        if not actor or not actor.strip():
            raise ValidationError("確定操作の実行者は必須です")

        def apply(plan: Plan) -> None:
            plan.ensure_transition(PlanStatus.SCHEDULED, "finalize")
            slot = self._coerce_slot(chosen_time, plan)
            if not plan.contains_date(slot.day):
                raise ValidationError(
                    f"{slot} は候補期間（{plan.date_range_start} 〜 {plan.date_range_end}）外です"
                )
            meeting_slots(slot, plan.duration_minutes)

            plan.finalized_time = slot.start_datetime(plan.tz)
            plan.finalized_by = actor
            plan.transition_to(PlanStatus.SCHEDULED, "finalize")

        plan = await self._mutate(plan_id, apply, "finalize")
        logger.info(f"プランを確定: {plan_id} -> {plan.finalized_slot} (実行者 {actor})")

        await self._notify("日程確定", lambda: self.gateway.notify_finalized(plan))
        return plan

    async def complete(self, plan_id: str) -> Plan:
        """開催済みにする（scheduled → completed）"""
        plan = await self._mutate(
            plan_id,
            lambda plan: plan.transition_to(PlanStatus.COMPLETED, "complete"),
            "complete"
        )
        logger.info(f"プランを完了: {plan_id}")
        return plan

    async def cancel(self, plan_id: str, actor: str) -> Plan:
        """
        プランをキャンセルし、全招待トークンを無効化

        トークン無効化に失敗してもステータスは戻さず、PartialCancellationError を送出します。
        retry_token_invalidation で無効化のみを再実行できます。
        """
        plan = await self._mutate(
            plan_id,
            lambda plan: plan.transition_to(PlanStatus.CANCELLED, "cancel"),
            "cancel"
        )
        logger.info(f"プランをキャンセル: {plan_id} (実行者 {actor})")

        await self._invalidate_tokens(plan_id)
        await self._notify("キャンセル", lambda: self.gateway.notify_cancelled(plan))
        return plan

    async def retry_token_invalidation(self, plan_id: str) -> int:
        """
        キャンセル済みプランのトークン無効化のみを再実行

        無効化の失敗は TransientInfrastructureError のまま送出するため、
        retry_transient でリトライできます。
        """
        plan = await self.get_plan(plan_id)
        if plan.status != PlanStatus.CANCELLED:
            raise IllegalTransitionError(
                plan.status, PlanStatus.CANCELLED, operation="retry_token_invalidation", plan_id=plan_id
            )
        count = await self.gateway.invalidate_tokens(plan_id)
        logger.info(f"招待トークンの無効化を再実行: {plan_id} ({count}件)")
        return count

    async def _invalidate_tokens(self, plan_id: str) -> int:
        try:
            return await self.gateway.invalidate_tokens(plan_id)
        except TransientInfrastructureError as e:
            logger.error(f"プラン {plan_id} の招待トークン無効化に失敗: {e}")
            raise PartialCancellationError(plan_id, cause=e) from e

    # アーカイブ

    async def archive(self, plan_id: str) -> Plan:
        """アーカイブ（completed / cancelled のみ、ステータスは変更しない）"""

        def apply(plan: Plan) -> Optional[bool]:
            if plan.is_archived():
                return False
            if not plan.is_terminal():
                raise IllegalTransitionError(plan.status, None, operation="archive", plan_id=plan_id)
            plan.archived_at = datetime.now(timezone.utc)
            return None

        plan = await self._mutate(plan_id, apply, "archive")
        logger.info(f"プランをアーカイブ: {plan_id}")
        return plan

    async def unarchive(self, plan_id: str) -> Plan:
        """アーカイブ解除"""

        def apply(plan: Plan) -> Optional[bool]:
            if not plan.is_archived():
                return False
            plan.archived_at = None
            return None

        plan = await self._mutate(plan_id, apply, "unarchive")
        logger.info(f"プランのアーカイブを解除: {plan_id}")
        return plan

    async def auto_archive(self, now: Optional[datetime] = None) -> int:
        """
        保持期間を過ぎた completed / cancelled プランをアーカイブ

        Args:
            now: 基準日時（未指定時は現在時刻）

        Returns:
            int: 今回アーカイブしたプラン数
        """
        now = now or datetime.now(timezone.utc)
        cutoff = retention_cutoff(now, self.settings.archive_retention_days)
        candidates = await self.plans.list_archive_candidates(TERMINAL_STATUSES, cutoff)

        archived = set()
        for candidate in candidates:

            def apply(plan: Plan) -> Optional[bool]:
                if plan.is_archived() or not plan.is_terminal() or plan.status_changed_at >= cutoff:
                    return False
                plan.archived_at = now
                return None

            saved = await self._mutate(candidate.plan_id, apply, "auto_archive")
            if saved.archived_at == now:
                archived.add(saved.plan_id)

        logger.info(f"自動アーカイブ: {len(archived)}件")
        return len(archived)

    # プラン編集（draft / collecting_availability のみ）

    async def update_plan(
        self,
        plan_id: str,
        activity_type: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        date_range_start: Optional[date] = None,
        date_range_end: Optional[date] = None
    ) -> Plan:
        """確定前のプラン内容を更新"""

        def apply(plan: Plan) -> None:
            plan.ensure_editable("update_plan")
            new_start = date_range_start or plan.date_range_start
            new_end = date_range_end or plan.date_range_end
            self._validate_date_range(new_start, new_end)

            if activity_type is not None:
                plan.activity_type = activity_type
            if duration_minutes is not None:
                plan.duration_minutes = duration_minutes
            if location is not None:
                plan.location = location
            if notes is not None:
                plan.notes = notes
            self._assign_date_range(plan, new_start, new_end)

        plan = await self._mutate(plan_id, apply, "update_plan")
        logger.info(f"プランを更新: {plan_id}")
        return plan

    def _assign_date_range(self, plan: Plan, start: date, end: date) -> None:
        # 代入ごとに検証されるため、途中状態でも end >= start を保つ順序で代入する
        if start <= plan.date_range_end:
            plan.date_range_start = start
            plan.date_range_end = end
        else:
            plan.date_range_end = end
            plan.date_range_start = start

    async def extend_date_range(self, plan_id: str, new_end: date) -> Plan:
        """候補期間の終了日を変更"""

        def apply(plan: Plan) -> None:
            plan.ensure_editable("extend_date_range")
            self._validate_date_range(plan.date_range_start, new_end)
            plan.date_range_end = new_end

        plan = await self._mutate(plan_id, apply, "extend_date_range")
        logger.info(f"候補期間を変更: {plan_id} -> {new_end}")
        return plan

    async def add_invitee(
        self,
        plan_id: str,
        contact_ref: str,
        display_name: Optional[str] = None,
        attendance_type: AttendanceType = AttendanceType.MUST_ATTEND
    ) -> InviteLinkInfo:
        """招待者を追加してアクセストークンを発行（draftはcollecting_availabilityへ）"""
        try:
            invitee = Invitee(contact_ref=contact_ref, display_name=display_name, attendance_type=attendance_type)
        except PydanticValidationError as e:
            raise ValidationError(f"招待者の入力が不正です: {e}")

        def apply(plan: Plan) -> None:
            plan.ensure_editable("add_invitee")
            if plan.get_invitee(invitee.contact_ref) is not None:
                raise ValidationError(f"{invitee.contact_ref} は既に招待されています")
            if invitee.contact_ref == plan.initiator_id:
                raise ValidationError("主催者を招待者に含めることはできません")

            plan.invitees = plan.invitees + [invitee.model_copy()]
            if plan.status == PlanStatus.DRAFT:
                plan.transition_to(PlanStatus.COLLECTING_AVAILABILITY, "add_invitee")

        plan = await self._mutate(plan_id, apply, "add_invitee")
        logger.info(f"招待者を追加: {plan_id} <- {invitee.contact_ref}")
        return await self._issue_link(plan, invitee)

    async def remove_invitee(self, plan_id: str, contact_ref: str) -> Plan:
        """招待者を削除してトークンと提出済みの空き時間を破棄（最後の1人は削除不可）"""

        def apply(plan: Plan) -> None:
            plan.ensure_editable("remove_invitee")
            if plan.get_invitee(contact_ref) is None:
                raise NotFoundError(f"招待者が見つかりません: {contact_ref}")
            if len(plan.invitees) <= 1:
                raise ValidationError("最後の招待者は削除できません")
            plan.invitees = [invitee for invitee in plan.invitees if invitee.contact_ref != contact_ref]

        plan = await self._mutate(plan_id, apply, "remove_invitee")
        logger.info(f"招待者を削除: {plan_id} -> {contact_ref}")

        await self.gateway.invalidate_token(plan_id, contact_ref)
        await self.store.remove(plan_id, contact_ref)
        return plan

    async def update_invitee_attendance(
        self,
        plan_id: str,
        contact_ref: str,
        attendance_type: AttendanceType
    ) -> Plan:
        """招待者の出席区分を変更"""
        try:
            attendance_type = AttendanceType(attendance_type)
        except ValueError:
            raise ValidationError(f"不明な出席区分です: {attendance_type!r}")

        def apply(plan: Plan) -> None:
            plan.ensure_editable("update_invitee_attendance")
            invitee = plan.get_invitee(contact_ref)
            if invitee is None:
                raise NotFoundError(f"招待者が見つかりません: {contact_ref}")
            invitee.attendance_type = attendance_type

        return await self._mutate(plan_id, apply, "update_invitee_attendance")

    async def send_reminders(self, plan_id: str, now: Optional[datetime] = None) -> ReminderResult:
        """
        未回答の招待者にリマインダーを送信

        Raises:
            ValidationError: 前回送信からクールダウン中、または未回答者がいない
        """
        now = now or datetime.now(timezone.utc)
        cooldown = timedelta(minutes=self.settings.reminder_cooldown_minutes)
        pending: List[Invitee] = []

        def apply(plan: Plan) -> None:
            plan.ensure_editable("send_reminders")
            if plan.last_reminder_sent_at is not None and now - plan.last_reminder_sent_at < cooldown:
                remaining = plan.last_reminder_sent_at + cooldown - now
                minutes = max(1, -(-int(remaining.total_seconds()) // 60))
                raise ValidationError(f"リマインダーは{minutes}分後に再送信できます")

            pending[:] = plan.pending_invitees()
            if not pending:
                raise ValidationError("全ての招待者が回答済みです")
            plan.last_reminder_sent_at = now

        plan = await self._mutate(plan_id, apply, "send_reminders")
        sent = await self.gateway.send_reminders(plan, pending)
        return ReminderResult(
            reminders_sent=sent,
            pending_invitees=[invitee.name for invitee in pending]
        )
