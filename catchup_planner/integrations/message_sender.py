"""
メッセージ送信

招待・提出通知・確定通知・キャンセル通知・リマインダーのメッセージを整形して送信します。
配信チャネル（SMS・メール・アプリ内通知）は外部サービスの担当で、
ここでは送信内容をログに記録し、送信済みメッセージを outbox に保持します。
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """通知種別列挙"""
    INVITATION = "invitation"
    AVAILABILITY_SUBMITTED = "availability_submitted"
    PLAN_READY = "plan_ready"
    PLAN_FINALIZED = "plan_finalized"
    PLAN_CANCELLED = "plan_cancelled"
    REMINDER = "reminder_sent"


class OutboundMessage(BaseModel):
    """送信済みメッセージ"""
    recipient: str = Field(..., description="宛先（ユーザーIDまたは連絡先参照）")
    notification_type: NotificationType
    plan_id: str
    text: str
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MessageSender:
    """
    メッセージ送信管理
    - 通知種別ごとのメッセージ整形
    - 送信履歴（outbox）の保持
    """

    def __init__(self):
        self.outbox: List[OutboundMessage] = []

    async def send_invitation(self, recipient: str, activity: Optional[str], url: str, plan_id: str) -> bool:
        """招待メッセージ送信"""
        message = f"""
📅 {activity or 'キャッチアップ'}のお誘い

都合の良い時間帯を以下のリンクから入力してください：
{url}
"""
        return await self._send(recipient, NotificationType.INVITATION, plan_id, message)

    async def send_availability_submitted(self, recipient: str, participant_name: str, plan_id: str) -> bool:
        """空き時間提出の通知送信"""
        message = f"{participant_name}さんが空き時間を提出しました。"
        return await self._send(recipient, NotificationType.AVAILABILITY_SUBMITTED, plan_id, message)

    async def send_plan_ready(self, recipient: str, activity: Optional[str], plan_id: str) -> bool:
        """確定可能の通知送信"""
        message = f"必須参加者全員が回答しました！{activity or 'キャッチアップ'}の日程を確定できます。"
        return await self._send(recipient, NotificationType.PLAN_READY, plan_id, message)

    async def send_plan_finalized(
        self,
        recipient: str,
        activity: Optional[str],
        finalized_time: Optional[datetime],
        location: Optional[str],
        plan_id: str
    ) -> bool:
        """日程確定の通知送信"""
        time_text = finalized_time.strftime('%Y-%m-%d %H:%M') if finalized_time else '未定'
        message = f"""
🎉 日程が確定しました

【内容】{activity or 'キャッチアップ'}
【日時】{time_text}
【場所】{location or '未定'}
"""
        return await self._send(recipient, NotificationType.PLAN_FINALIZED, plan_id, message)

    async def send_plan_cancelled(self, recipient: str, activity: Optional[str], plan_id: str) -> bool:
        """キャンセルの通知送信"""
        message = f"{activity or 'キャッチアップ'}の予定はキャンセルされました。"
        return await self._send(recipient, NotificationType.PLAN_CANCELLED, plan_id, message)

    async def send_reminder(self, recipient: str, activity: Optional[str], url: Optional[str], plan_id: str) -> bool:
        """リマインダー送信"""
        message = f"""
⏰ {activity or 'キャッチアップ'}の空き時間がまだ未入力です

{url or ''}
"""
        return await self._send(recipient, NotificationType.REMINDER, plan_id, message)

    def messages_for(self, recipient: str) -> List[OutboundMessage]:
        """宛先ごとの送信済みメッセージ"""
        return [message for message in self.outbox if message.recipient == recipient]

    async def _send(self, recipient: str, notification_type: NotificationType, plan_id: str, message: str) -> bool:
        """メッセージ送信（配信は外部サービス）"""
        self.outbox.append(OutboundMessage(
            recipient=recipient,
            notification_type=notification_type,
            plan_id=plan_id,
            text=message.strip()
        ))
        logger.info(f"メッセージ送信: {notification_type.value} -> {recipient}")
        return True
