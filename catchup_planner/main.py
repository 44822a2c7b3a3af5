"""
Catchup Planner HTTPアプリケーション
"""

import logging
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .api import plans
from .config import FirestoreConfig, SchedulingSettings
from .integrations.invite_gateway import InviteLinkGateway
from .scheduling.availability_store import AvailabilityStore
from .scheduling.lifecycle import PlanLifecycleController

logger = logging.getLogger(__name__)


def build_controller(settings: SchedulingSettings) -> PlanLifecycleController:
    """設定に応じたストレージでライフサイクル管理を構築"""
    if settings.storage_backend == "firestore":
        from .integrations.firestore_client import create_repositories

        plan_repository, availability_repository, link_repository = create_repositories(
            FirestoreConfig.from_env()
        )
        logger.info("Firestoreストレージを使用します")
        return PlanLifecycleController(
            plan_repository=plan_repository,
            availability_store=AvailabilityStore(availability_repository),
            gateway=InviteLinkGateway(
                link_repository,
                base_url=settings.base_url,
                expiry_days=settings.invite_link_expiry_days
            ),
            settings=settings
        )

    logger.info("インメモリストレージを使用します")
    return PlanLifecycleController(settings=settings)


def create_app(
    controller: Optional[PlanLifecycleController] = None,
    settings: Optional[SchedulingSettings] = None
) -> FastAPI:
    """FastAPIアプリケーションを作成"""
    settings = settings or SchedulingSettings.from_env()

    app = FastAPI(title="Catchup Planner", version=__version__)
    app.state.controller = controller or build_controller(settings)

    app.include_router(plans.router)
    app.include_router(plans.availability_router)
    plans.register_exception_handlers(app)
    return app


app = create_app()
