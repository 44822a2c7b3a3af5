"""
招待・通知ゲートウェイ

招待者ごとのアクセストークンの発行・解決・無効化と、
ライフサイクル上の通知配信を担当します。
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from ..errors import NotFoundError
from ..models.invite_link import DEFAULT_LINK_EXPIRY_DAYS, InviteLink
from ..models.plan import Invitee, Plan
from ..models.repository import InMemoryInviteLinkRepository, InviteLinkRepository
from .message_sender import MessageSender

logger = logging.getLogger(__name__)


class InviteNotificationGateway(ABC):
    """招待・通知ゲートウェイのインターフェース"""

    @abstractmethod
    async def issue_token(self, plan: Plan, contact_ref: str) -> InviteLink:
        """招待者のアクセストークンを発行"""

    @abstractmethod
    async def resolve_token(self, token: str) -> InviteLink:
        """トークンを解決（未知・無効化済み・期限切れはNotFoundError）"""

    @abstractmethod
    async def mark_submitted(self, token: str) -> None:
        """トークン経由の提出を記録"""

    @abstractmethod
    async def invalidate_tokens(self, plan_id: str) -> int:
        """プランの全トークンを無効化"""

    @abstractmethod
    async def invalidate_token(self, plan_id: str, contact_ref: str) -> int:
        """招待者のトークンを無効化"""

    @abstractmethod
    async def notify_availability_submitted(self, plan: Plan, participant_id: str) -> None:
        """主催者に提出を通知"""

    @abstractmethod
    async def notify_plan_ready(self, plan: Plan) -> None:
        """主催者に確定可能を通知"""

    @abstractmethod
    async def notify_finalized(self, plan: Plan) -> None:
        """全参加者に確定を通知"""

    @abstractmethod
    async def notify_cancelled(self, plan: Plan) -> None:
        """全参加者にキャンセルを通知"""

    @abstractmethod
    async def send_reminders(self, plan: Plan, invitees: List[Invitee]) -> int:
        """未回答の招待者にリマインダーを送信"""


class InviteLinkGateway(InviteNotificationGateway):
    """招待リンクリポジトリとメッセージ送信によるゲートウェイ実装"""

    def __init__(
        self,
        link_repository: Optional[InviteLinkRepository] = None,
        sender: Optional[MessageSender] = None,
        base_url: str = "http://localhost:3000",
        expiry_days: int = DEFAULT_LINK_EXPIRY_DAYS
    ):
        self.link_repository = link_repository or InMemoryInviteLinkRepository()
        self.sender = sender or MessageSender()
        self.base_url = base_url
        self.expiry_days = expiry_days

    def url_for(self, link: InviteLink) -> str:
        """招待URL"""
        return link.url(self.base_url)

    async def issue_token(self, plan: Plan, contact_ref: str) -> InviteLink:
        link = InviteLink.issue(plan.plan_id, contact_ref, expiry_days=self.expiry_days)
        saved = await self.link_repository.create(link)
        logger.info(f"招待リンクを発行: プラン {plan.plan_id}, 招待者 {contact_ref}")
        await self.sender.send_invitation(contact_ref, plan.activity_type, self.url_for(saved), plan.plan_id)
        return saved

    async def resolve_token(self, token: str) -> InviteLink:
        link = await self.link_repository.get_by_token(token)
        if link is None or not link.is_valid():
            raise NotFoundError("招待リンクが見つからないか、無効になっています")

        if link.accessed_at is None:
            link.accessed_at = datetime.now(timezone.utc)
            link = await self.link_repository.update(link)
        return link

    async def mark_submitted(self, token: str) -> None:
        link = await self.link_repository.get_by_token(token)
        if link is None:
            raise NotFoundError("招待リンクが見つかりません")
        link.submitted_at = datetime.now(timezone.utc)
        await self.link_repository.update(link)

    async def invalidate_tokens(self, plan_id: str) -> int:
        count = await self.link_repository.invalidate_for_plan(plan_id, datetime.now(timezone.utc))
        logger.info(f"プラン {plan_id} の招待リンクを無効化: {count}件")
        return count

    async def invalidate_token(self, plan_id: str, contact_ref: str) -> int:
        count = await self.link_repository.invalidate_for_contact(
            plan_id, contact_ref, datetime.now(timezone.utc)
        )
        logger.info(f"招待者 {contact_ref} の招待リンクを無効化: {count}件")
        return count

    async def notify_availability_submitted(self, plan: Plan, participant_id: str) -> None:
        invitee = plan.get_invitee(participant_id)
        name = invitee.name if invitee else participant_id
        await self.sender.send_availability_submitted(plan.initiator_id, name, plan.plan_id)

    async def notify_plan_ready(self, plan: Plan) -> None:
        await self.sender.send_plan_ready(plan.initiator_id, plan.activity_type, plan.plan_id)

    async def notify_finalized(self, plan: Plan) -> None:
        for recipient in plan.participant_ids():
            await self.sender.send_plan_finalized(
                recipient, plan.activity_type, plan.finalized_time, plan.location, plan.plan_id
            )

    async def notify_cancelled(self, plan: Plan) -> None:
        for recipient in plan.participant_ids():
            await self.sender.send_plan_cancelled(recipient, plan.activity_type, plan.plan_id)

    async def send_reminders(self, plan: Plan, invitees: List[Invitee]) -> int:
        sent = 0
        for invitee in invitees:
            link = await self.link_repository.get_active_for_contact(plan.plan_id, invitee.contact_ref)
            url = self.url_for(link) if link else None
            if await self.sender.send_reminder(invitee.contact_ref, plan.activity_type, url, plan.plan_id):
                sent += 1
        logger.info(f"リマインダー送信: プラン {plan.plan_id}, {sent}件")
        return sent
