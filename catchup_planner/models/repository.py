"""
リポジトリ基底クラス

プラン・空き時間・招待リンクの永続化インターフェースと、
インメモリ実装（テスト・CLI・単一プロセス運用向け）を提供します。
Firestore実装は integrations.firestore_client にあります。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel

from ..errors import NotFoundError, SchedulingError, TransientInfrastructureError
from .availability import ParticipantAvailability
from .invite_link import InviteLink
from .plan import Plan, PlanStatus

# ログ設定
logger = logging.getLogger(__name__)

# 型変数
T = TypeVar('T', bound=BaseModel)


class RepositoryError(TransientInfrastructureError):
    """リポジトリエラー基底クラス（ストレージ障害）"""
    pass


class DocumentNotFoundError(NotFoundError):
    """ドキュメント未発見エラー"""
    pass


class VersionConflictError(SchedulingError):
    """楽観的排他制御の競合（他の操作が先に書き込んだ）"""

    code = "version_conflict"

    def __init__(self, document_id: str, expected_version: int, current_version: int):
        self.document_id = document_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"ID {document_id} のバージョン競合: 期待 {expected_version}, 現在 {current_version}"
        )


# インターフェース

class PlanRepository(ABC):
    """プランリポジトリ"""

    @abstractmethod
    async def create(self, plan: Plan) -> Plan:
        """プランを作成"""

    @abstractmethod
    async def get(self, plan_id: str) -> Optional[Plan]:
        """IDでプランを取得"""

    @abstractmethod
    async def replace(self, plan: Plan, expected_version: int) -> Plan:
        """保存済みバージョンが一致する場合のみ置き換え（バージョンは+1される）"""

    @abstractmethod
    async def list_by_initiator(self, initiator_id: str, include_archived: bool = False) -> List[Plan]:
        """主催者のプラン一覧"""

    @abstractmethod
    async def list_archive_candidates(
        self,
        statuses: Iterable[PlanStatus],
        changed_before: datetime
    ) -> List[Plan]:
        """未アーカイブかつ指定ステータスで、ステータス変更が基準日時より前のプラン"""


class AvailabilityRepository(ABC):
    """空き時間リポジトリ（(plan_id, participant_id) 単位）"""

    @abstractmethod
    async def put(self, availability: ParticipantAvailability) -> ParticipantAvailability:
        """参加者の空き時間を丸ごと置き換え"""

    @abstractmethod
    async def get(self, plan_id: str, participant_id: str) -> Optional[ParticipantAvailability]:
        """参加者の空き時間を取得"""

    @abstractmethod
    async def list_for_plan(self, plan_id: str) -> List[ParticipantAvailability]:
        """プランの全参加者の空き時間"""

    @abstractmethod
    async def delete(self, plan_id: str, participant_id: str) -> bool:
        """参加者の空き時間を削除（削除した場合True）"""


class InviteLinkRepository(ABC):
    """招待リンクリポジトリ"""

    @abstractmethod
    async def create(self, link: InviteLink) -> InviteLink:
        """リンクを作成"""

    @abstractmethod
    async def get_by_token(self, token: str) -> Optional[InviteLink]:
        """トークンでリンクを取得"""

    @abstractmethod
    async def update(self, link: InviteLink) -> InviteLink:
        """リンクを更新"""

    @abstractmethod
    async def list_for_plan(self, plan_id: str) -> List[InviteLink]:
        """プランの全リンク"""

    async def get_active_for_contact(self, plan_id: str, contact_ref: str) -> Optional[InviteLink]:
        """招待者の有効なリンク"""
        for link in await self.list_for_plan(plan_id):
            if link.contact_ref == contact_ref and link.is_valid():
                return link
        return None

    async def invalidate_for_plan(self, plan_id: str, at: datetime) -> int:
        """プランの全リンクを無効化"""
        count = 0
        for link in await self.list_for_plan(plan_id):
            if link.invalidated_at is None:
                link.invalidated_at = at
                await self.update(link)
                count += 1
        return count

    async def invalidate_for_contact(self, plan_id: str, contact_ref: str, at: datetime) -> int:
        """招待者のリンクを無効化"""
        count = 0
        for link in await self.list_for_plan(plan_id):
            if link.contact_ref == contact_ref and link.invalidated_at is None:
                link.invalidated_at = at
                await self.update(link)
                count += 1
        return count


# インメモリ実装

class BaseInMemoryRepository(Generic[T]):
    """インメモリリポジトリ基底クラス（辞書形式で保持し、参照の共有を避ける）"""

    def __init__(self, collection_name: str, model_class: Type[T]):
        self.collection_name = collection_name
        self.model_class = model_class
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _prepare_data_for_storage(self, entity: T) -> Dict[str, Any]:
        """ストレージ用にデータを準備"""
        return entity.to_dict() if hasattr(entity, 'to_dict') else entity.model_dump()

    def _prepare_data_from_storage(self, data: Dict[str, Any]) -> T:
        """ストレージからデータを復元"""
        if hasattr(self.model_class, 'from_dict'):
            return self.model_class.from_dict(data)
        return self.model_class(**data)

    async def _read(self, document_id: str) -> Optional[T]:
        async with self._lock:
            data = self._documents.get(document_id)
        if data is None:
            return None
        return self._prepare_data_from_storage(data)

    async def _delete(self, document_id: str) -> bool:
        async with self._lock:
            removed = self._documents.pop(document_id, None)
        if removed is not None:
            logger.debug(f"{self.collection_name}から削除: {document_id}")
        return removed is not None

    async def _write(self, document_id: str, entity: T) -> T:
        data = self._prepare_data_for_storage(entity)
        async with self._lock:
            self._documents[document_id] = data
        logger.debug(f"{self.collection_name}に書き込み: {document_id}")
        return self._prepare_data_from_storage(data)

    async def _scan(self) -> List[T]:
        async with self._lock:
            documents = list(self._documents.values())
        return [self._prepare_data_from_storage(data) for data in documents]

    def count(self) -> int:
        """保持ドキュメント数"""
        return len(self._documents)


class InMemoryPlanRepository(BaseInMemoryRepository[Plan], PlanRepository):
    """インメモリのプランリポジトリ"""

    def __init__(self):
        super().__init__("plans", Plan)

    async def create(self, plan: Plan) -> Plan:
        async with self._lock:
            if plan.plan_id in self._documents:
                raise RepositoryError(f"ID {plan.plan_id} のドキュメントは既に存在します")
            self._documents[plan.plan_id] = self._prepare_data_for_storage(plan)
        logger.info(f"{self.collection_name}に新しいドキュメントを作成: {plan.plan_id}")
        return await self._read(plan.plan_id)

    async def get(self, plan_id: str) -> Optional[Plan]:
        return await self._read(plan_id)

    async def replace(self, plan: Plan, expected_version: int) -> Plan:
        async with self._lock:
            stored = self._documents.get(plan.plan_id)
            if stored is None:
                raise DocumentNotFoundError(f"ID {plan.plan_id} のドキュメントが見つかりません")
            if stored["version"] != expected_version:
                raise VersionConflictError(plan.plan_id, expected_version, stored["version"])

            data = self._prepare_data_for_storage(plan)
            data["version"] = expected_version + 1
            self._documents[plan.plan_id] = data

        logger.debug(f"{self.collection_name}ドキュメントを更新: {plan.plan_id} (version={expected_version + 1})")
        return self._prepare_data_from_storage(data)

    async def list_by_initiator(self, initiator_id: str, include_archived: bool = False) -> List[Plan]:
        plans = [
            plan for plan in await self._scan()
            if plan.initiator_id == initiator_id and (include_archived or not plan.is_archived())
        ]
        return sorted(plans, key=lambda plan: plan.created_at, reverse=True)

    async def list_archive_candidates(
        self,
        statuses: Iterable[PlanStatus],
        changed_before: datetime
    ) -> List[Plan]:
        wanted = set(statuses)
        return [
            plan for plan in await self._scan()
            if plan.status in wanted
            and not plan.is_archived()
            and plan.status_changed_at < changed_before
        ]


class InMemoryAvailabilityRepository(BaseInMemoryRepository[ParticipantAvailability], AvailabilityRepository):
    """インメモリの空き時間リポジトリ"""

    def __init__(self):
        super().__init__("availability", ParticipantAvailability)

    @staticmethod
    def _document_id(plan_id: str, participant_id: str) -> str:
        return f"{plan_id}__{participant_id}"

    async def put(self, availability: ParticipantAvailability) -> ParticipantAvailability:
        return await self._write(
            self._document_id(availability.plan_id, availability.participant_id),
            availability
        )

    async def get(self, plan_id: str, participant_id: str) -> Optional[ParticipantAvailability]:
        return await self._read(self._document_id(plan_id, participant_id))

    async def list_for_plan(self, plan_id: str) -> List[ParticipantAvailability]:
        return [record for record in await self._scan() if record.plan_id == plan_id]

    async def delete(self, plan_id: str, participant_id: str) -> bool:
        return await self._delete(self._document_id(plan_id, participant_id))


class InMemoryInviteLinkRepository(BaseInMemoryRepository[InviteLink], InviteLinkRepository):
    """インメモリの招待リンクリポジトリ"""

    def __init__(self):
        super().__init__("invite_links", InviteLink)

    async def create(self, link: InviteLink) -> InviteLink:
        return await self._write(link.token, link)

    async def get_by_token(self, token: str) -> Optional[InviteLink]:
        return await self._read(token)

    async def update(self, link: InviteLink) -> InviteLink:
        if await self._read(link.token) is None:
            raise DocumentNotFoundError(f"トークン {link.token[:8]}... のリンクが見つかりません")
        return await self._write(link.token, link)

    async def list_for_plan(self, plan_id: str) -> List[InviteLink]:
        links = [link for link in await self._scan() if link.plan_id == plan_id]
        return sorted(links, key=lambda link: link.created_at)
