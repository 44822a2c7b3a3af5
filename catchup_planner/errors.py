"""
日程調整エラー定義

クライアント起因のエラー（ValidationError / IllegalTransitionError / NotFoundError）は
そのまま呼び出し元に返し、自動リトライしません。
インフラ起因のエラー（TransientInfrastructureError）のみリトライ対象です。
PartialCancellationError はキャンセル済みのため、無効化のみを個別に再実行します。
"""

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """日程調整エラー基底クラス"""

    code = "scheduling_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """APIレスポンス用の辞書に変換"""
        return {"error": self.code, "message": self.message}


class ValidationError(SchedulingError):
    """入力値・ポリシー違反エラー（状態変更前に必ず検出）"""

    code = "validation_error"


class NotFoundError(SchedulingError):
    """プラン・参加者・トークン未発見エラー"""

    code = "not_found"


class IllegalTransitionError(SchedulingError):
    """現在のステータスと両立しないライフサイクル操作"""

    code = "illegal_transition"

    def __init__(
        self,
        current_status: Any,
        requested_status: Any = None,
        operation: Optional[str] = None,
        plan_id: Optional[str] = None
    ):
        self.current_status = _status_value(current_status)
        self.requested_status = _status_value(requested_status)
        self.operation = operation
        self.plan_id = plan_id

        target = self.requested_status or operation or "unknown"
        super().__init__(
            f"ステータス {self.current_status} から {target} への遷移はできません"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "current_status": self.current_status,
            "requested_status": self.requested_status,
            "operation": self.operation,
        })
        return data


class TransientInfrastructureError(SchedulingError):
    """ネットワーク・ストレージの一時的な障害（リトライ可能）"""

    code = "transient_infrastructure_error"


class PartialCancellationError(SchedulingError):
    """
    キャンセルは反映済みだが、招待トークンの無効化に失敗した

    キャンセル全体の再実行は不正な遷移になるため自動リトライの対象外です。
    呼び出し元は retry_token_invalidation で無効化のみを再実行します。
    """

    code = "partial_cancellation"

    def __init__(self, plan_id: str, cause: Optional[BaseException] = None):
        self.plan_id = plan_id
        self.cause = cause
        super().__init__(
            f"プラン {plan_id} はキャンセルされましたが、招待トークンの無効化に失敗しました: {cause}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["plan_id"] = self.plan_id
        return data


def _status_value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", status)
