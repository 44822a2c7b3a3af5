"""
Firestore リポジトリ実装

プラン・空き時間・招待リンクを Cloud Firestore に保存します。
- プランの更新はトランザクション内で version を比較するチェック・アンド・セット
- 招待リンクの連絡先参照は Fernet で暗号化して保存
- Google API の一時的な障害は RepositoryError（TransientInfrastructureError）に変換
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Generic

from cryptography.fernet import Fernet, InvalidToken
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from pydantic import BaseModel

from ..config import FirestoreConfig
from ..models.availability import ParticipantAvailability
from ..models.invite_link import InviteLink
from ..models.plan import Plan, PlanStatus
from ..models.repository import (
    AvailabilityRepository,
    DocumentNotFoundError,
    InviteLinkRepository,
    PlanRepository,
    RepositoryError,
    VersionConflictError,
)

# ログ設定
logger = logging.getLogger(__name__)

# 型変数
T = TypeVar('T', bound=BaseModel)

# 一時的な障害としてリトライ対象にするエラー
TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.Aborted,
    google_exceptions.TooManyRequests,
)


class EncryptionError(RepositoryError):
    """暗号化エラー"""
    pass


class EncryptionManager:
    """暗号化・復号化管理"""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        暗号化マネージャーを初期化

        Args:
            encryption_key: Fernetキー（URLセーフBase64）
        """
        if not encryption_key:
            # 開発環境用の一時キー（本番では必ず ENCRYPTION_KEY を設定）
            logger.warning("暗号化キーが設定されていません。一時キーを使用します。")
            encryption_key = Fernet.generate_key().decode()

        try:
            self.fernet = Fernet(encryption_key.encode() if isinstance(encryption_key, str) else encryption_key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"暗号化キーの初期化に失敗しました: {e}")

    def encrypt(self, data: str) -> str:
        """文字列を暗号化"""
        return self.fernet.encrypt(data.encode('utf-8')).decode('utf-8')

    def decrypt(self, encrypted_data: str) -> str:
        """暗号化された文字列を復号化"""
        try:
            return self.fernet.decrypt(encrypted_data.encode('utf-8')).decode('utf-8')
        except InvalidToken as e:
            raise EncryptionError(f"復号化に失敗しました: {e}")

    def encrypt_dict(self, data: Dict[str, Any], encrypt_fields: List[str]) -> Dict[str, Any]:
        """辞書の指定フィールドを暗号化"""
        result = data.copy()
        for field in encrypt_fields:
            if result.get(field) is not None:
                result[field] = self.encrypt(str(result[field]))
        return result

    def decrypt_dict(self, data: Dict[str, Any], encrypt_fields: List[str]) -> Dict[str, Any]:
        """辞書の指定フィールドを復号化"""
        result = data.copy()
        for field in encrypt_fields:
            if result.get(field) is not None:
                result[field] = self.decrypt(result[field])
        return result


def create_client(config: FirestoreConfig) -> firestore.AsyncClient:
    """設定からFirestoreクライアントを作成"""
    if config.emulator_host:
        logger.info(f"Firestoreエミュレータ接続: {config.emulator_host}")
    else:
        logger.info(f"Firestore接続: {config.project_id}")

    if config.credentials_path:
        return firestore.AsyncClient.from_service_account_json(
            config.credentials_path,
            project=config.project_id,
            database=config.database_id
        )
    return firestore.AsyncClient(project=config.project_id, database=config.database_id)


def _translate_error(collection_name: str, operation: str, error: Exception) -> Exception:
    """Google APIのエラーをリポジトリエラーに変換"""
    logger.error(f"{collection_name}{operation}エラー: {error}")
    if isinstance(error, TRANSIENT_ERRORS):
        return RepositoryError(f"{operation}に失敗しました（一時的な障害）: {error}")
    return error


class BaseFirestoreRepository(Generic[T]):
    """Firestore リポジトリ基底クラス"""

    def __init__(
        self,
        collection_name: str,
        model_class: Type[T],
        client: firestore.AsyncClient,
        encryption_manager: Optional[EncryptionManager] = None
    ):
        """
        リポジトリを初期化

        Args:
            collection_name: Firestoreコレクション名
            model_class: エンティティのPydanticモデルクラス
            client: Firestore非同期クライアント
            encryption_manager: 暗号化マネージャー
        """
        self.collection_name = collection_name
        self.model_class = model_class
        self.db = client
        self.collection = self.db.collection(collection_name)
        self.encrypted_fields = self._get_encrypted_fields()
        self.encryption_manager = encryption_manager
        if self.encrypted_fields and self.encryption_manager is None:
            self.encryption_manager = EncryptionManager()

    def _get_encrypted_fields(self) -> List[str]:
        """暗号化対象フィールドのリストを返す（オーバーライド可能）"""
        return []

    def _prepare_data_for_storage(self, entity: T) -> Dict[str, Any]:
        """ストレージ用にデータを準備"""
        data = entity.to_dict()
        if self.encrypted_fields:
            data = self.encryption_manager.encrypt_dict(data, self.encrypted_fields)
        return data

    def _prepare_data_from_storage(self, data: Dict[str, Any]) -> T:
        """ストレージからデータを復元"""
        if self.encrypted_fields:
            data = self.encryption_manager.decrypt_dict(data, self.encrypted_fields)
        return self.model_class.from_dict(data)

    async def _get_document(self, document_id: str) -> Optional[T]:
        try:
            doc = await self.collection.document(document_id).get()
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "ドキュメント取得", e)

        if not doc.exists:
            return None
        return self._prepare_data_from_storage(doc.to_dict())

    async def _set_document(self, document_id: str, entity: T) -> T:
        try:
            await self.collection.document(document_id).set(self._prepare_data_for_storage(entity))
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "ドキュメント保存", e)

        logger.debug(f"{self.collection_name}ドキュメントを保存: {document_id}")
        return entity

    async def _find_by_field(self, field_name: str, value: Any) -> List[T]:
        try:
            query = self.collection.where(filter=FieldFilter(field_name, "==", value))
            results = []
            async for doc in query.stream():
                results.append(self._prepare_data_from_storage(doc.to_dict()))
            return results
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "検索", e)


class FirestorePlanRepository(BaseFirestoreRepository[Plan], PlanRepository):
    """Firestoreのプランリポジトリ"""

    def __init__(self, client: firestore.AsyncClient):
        super().__init__("plans", Plan, client)

    async def create(self, plan: Plan) -> Plan:
        try:
            await self.collection.document(plan.plan_id).create(self._prepare_data_for_storage(plan))
        except google_exceptions.Conflict:
            raise RepositoryError(f"ID {plan.plan_id} のドキュメントは既に存在します")
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "ドキュメント作成", e)

        logger.info(f"{self.collection_name}に新しいドキュメントを作成: {plan.plan_id}")
        return plan

    async def get(self, plan_id: str) -> Optional[Plan]:
        return await self._get_document(plan_id)

    async def replace(self, plan: Plan, expected_version: int) -> Plan:
        doc_ref = self.collection.document(plan.plan_id)

        @firestore.async_transactional
        async def _replace_in_transaction(transaction) -> Dict[str, Any]:
            snapshot = await doc_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise DocumentNotFoundError(f"ID {plan.plan_id} のドキュメントが見つかりません")

            current_version = snapshot.to_dict().get("version", 0)
            if current_version != expected_version:
                raise VersionConflictError(plan.plan_id, expected_version, current_version)

            data = self._prepare_data_for_storage(plan)
            data["version"] = expected_version + 1
            transaction.set(doc_ref, data)
            return data

        try:
            data = await _replace_in_transaction(self.db.transaction())
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "トランザクション更新", e)

        logger.info(f"{self.collection_name}ドキュメントをトランザクション更新: {plan.plan_id}")
        return self._prepare_data_from_storage(data)

    async def list_by_initiator(self, initiator_id: str, include_archived: bool = False) -> List[Plan]:
        plans = [
            plan for plan in await self._find_by_field("initiator_id", initiator_id)
            if include_archived or not plan.is_archived()
        ]
        return sorted(plans, key=lambda plan: plan.created_at, reverse=True)

    async def list_archive_candidates(
        self,
        statuses: Iterable[PlanStatus],
        changed_before: datetime
    ) -> List[Plan]:
        try:
            query = self.collection.where(
                filter=FieldFilter("status", "in", [PlanStatus(status).value for status in statuses])
            )
            candidates = []
            async for doc in query.stream():
                plan = self._prepare_data_from_storage(doc.to_dict())
                # ISO文字列で保存しているため日時の比較は復元後に行う
                if not plan.is_archived() and plan.status_changed_at < changed_before:
                    candidates.append(plan)
            return candidates
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "アーカイブ候補検索", e)


class FirestoreAvailabilityRepository(BaseFirestoreRepository[ParticipantAvailability], AvailabilityRepository):
    """Firestoreの空き時間リポジトリ"""

    def __init__(self, client: firestore.AsyncClient):
        super().__init__("availability", ParticipantAvailability, client)

    @staticmethod
    def _document_id(plan_id: str, participant_id: str) -> str:
        return f"{plan_id}__{participant_id}"

    async def put(self, availability: ParticipantAvailability) -> ParticipantAvailability:
        return await self._set_document(
            self._document_id(availability.plan_id, availability.participant_id),
            availability
        )

    async def get(self, plan_id: str, participant_id: str) -> Optional[ParticipantAvailability]:
        return await self._get_document(self._document_id(plan_id, participant_id))

    async def list_for_plan(self, plan_id: str) -> List[ParticipantAvailability]:
        return await self._find_by_field("plan_id", plan_id)

    async def delete(self, plan_id: str, participant_id: str) -> bool:
        document = self.collection.document(self._document_id(plan_id, participant_id))
        try:
            snapshot = await document.get()
            if not snapshot.exists:
                return False
            await document.delete()
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "ドキュメント削除", e)

        logger.debug(f"{self.collection_name}ドキュメントを削除: {document.id}")
        return True


class FirestoreInviteLinkRepository(BaseFirestoreRepository[InviteLink], InviteLinkRepository):
    """Firestoreの招待リンクリポジトリ（連絡先参照は暗号化）"""

    def __init__(self, client: firestore.AsyncClient, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__("invite_links", InviteLink, client, encryption_manager)

    def _get_encrypted_fields(self) -> List[str]:
        return ["contact_ref"]

    async def create(self, link: InviteLink) -> InviteLink:
        return await self._set_document(link.token, link)

    async def get_by_token(self, token: str) -> Optional[InviteLink]:
        return await self._get_document(token)

    async def update(self, link: InviteLink) -> InviteLink:
        if await self._get_document(link.token) is None:
            raise DocumentNotFoundError("招待リンクが見つかりません")
        return await self._set_document(link.token, link)

    async def list_for_plan(self, plan_id: str) -> List[InviteLink]:
        links = await self._find_by_field("plan_id", plan_id)
        return sorted(links, key=lambda link: link.created_at)

    async def invalidate_for_plan(self, plan_id: str, at: datetime) -> int:
        """プランの全リンクをバッチで無効化"""
        links = [link for link in await self.list_for_plan(plan_id) if link.invalidated_at is None]
        if not links:
            return 0

        try:
            # バッチサイズ制限（Firestoreは500件まで）
            for offset in range(0, len(links), 500):
                batch = self.db.batch()
                for link in links[offset:offset + 500]:
                    batch.update(self.collection.document(link.token), {"invalidated_at": at.isoformat()})
                await batch.commit()
        except google_exceptions.GoogleAPICallError as e:
            raise _translate_error(self.collection_name, "バッチ無効化", e)

        logger.info(f"{self.collection_name}を{len(links)}件無効化: {plan_id}")
        return len(links)


def create_repositories(
    config: FirestoreConfig,
    client: Optional[firestore.AsyncClient] = None
) -> Tuple[FirestorePlanRepository, FirestoreAvailabilityRepository, FirestoreInviteLinkRepository]:
    """Firestoreのリポジトリ一式を作成"""
    client = client or create_client(config)
    encryption_manager = EncryptionManager(config.encryption_key)
    return (
        FirestorePlanRepository(client),
        FirestoreAvailabilityRepository(client),
        FirestoreInviteLinkRepository(client, encryption_manager),
    )
