"""
呼び出し側リトライ

TransientInfrastructureError のみを指数バックオフでリトライします。
ValidationError / IllegalTransitionError / NotFoundError は即座に呼び出し元へ返します。
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 0.5
) -> T:
    """
    一時的な障害に対するリトライ付き実行

    Args:
        operation: 引数なしで呼び出すコルーチン関数
        max_attempts: 最大試行回数
        base_delay: バックオフの基準秒数（base_delay * 2 ** attempt）

    Returns:
        operation の戻り値

    Raises:
        TransientInfrastructureError: 試行回数を超えた場合は最後のエラー
    """
    for attempt in range(max_attempts):
        try:
            return await operation()
        except TransientInfrastructureError as e:
            if attempt >= max_attempts - 1:
                logger.error(f"リトライ回数超過: {e}")
                raise
            delay = base_delay * (2 ** attempt)  # 指数バックオフ
            logger.warning(f"一時的な障害のためリトライ（試行 {attempt + 1}/{max_attempts}, {delay}秒後）: {e}")
            await asyncio.sleep(delay)

    raise ValueError("max_attemptsは1以上である必要があります")
