"""
プランAPIエンドポイント

/api/plans 以下でプランのライフサイクル操作と空き時間の提出・集計を提供します。
JSONのキーはcamelCaseです。
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors import (
    IllegalTransitionError,
    NotFoundError,
    PartialCancellationError,
    SchedulingError,
    TransientInfrastructureError,
    ValidationError,
)
from ..models.availability import AvailabilitySource
from ..models.plan import AttendanceType, Plan
from ..scheduling.lifecycle import PlanLifecycleController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plans", tags=["plans"])
availability_router = APIRouter(prefix="/api/availability", tags=["availability"])


def camelize(value: Any) -> Any:
    """辞書のキーを再帰的にcamelCaseへ変換"""
    if isinstance(value, dict):
        return {to_camel(key): camelize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [camelize(item) for item in value]
    return value


def plan_response(plan: Plan) -> Dict[str, Any]:
    """プランのレスポンス"""
    data = plan.to_dict()
    data["finalized_slot"] = plan.finalized_slot.canonical if plan.finalized_slot else None
    return camelize(data)


def get_controller(request: Request) -> PlanLifecycleController:
    """アプリケーションのライフサイクル管理を取得"""
    return request.app.state.controller


# リクエストモデル

class CamelModel(BaseModel):
    """camelCaseのJSONを受け付けるリクエストモデル"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InviteeRequest(CamelModel):
    contact_ref: str
    display_name: Optional[str] = None
    attendance_type: AttendanceType = AttendanceType.MUST_ATTEND


class CreatePlanRequest(CamelModel):
    initiator_id: str
    date_range_start: date
    date_range_end: date
    duration_minutes: int
    invitees: List[InviteeRequest] = Field(default_factory=list)
    activity_type: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    timezone: Optional[str] = None


class UpdatePlanRequest(CamelModel):
    activity_type: Optional[str] = None
    duration_minutes: Optional[int] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None


class SlotsRequest(CamelModel):
    slots: List[str] = Field(default_factory=list)
    source: AvailabilitySource = AvailabilitySource.MANUAL
    calendar_slots: Optional[List[str]] = None
    manual_slots: Optional[List[str]] = None


class SubmitAvailabilityRequest(SlotsRequest):
    participant_id: str


class FinalizeRequest(CamelModel):
    chosen_time: str
    actor: str


class AttendanceRequest(CamelModel):
    attendance_type: AttendanceType


# プラン

@router.post("", status_code=201)
async def create_plan(
    body: CreatePlanRequest,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """プラン作成"""
    result = await controller.create_plan(
        initiator_id=body.initiator_id,
        date_range_start=body.date_range_start,
        date_range_end=body.date_range_end,
        duration_minutes=body.duration_minutes,
        invitees=[invitee.model_dump() for invitee in body.invitees],
        activity_type=body.activity_type,
        location=body.location,
        notes=body.notes,
        timezone_name=body.timezone
    )
    response = plan_response(result.plan)
    response["inviteLinks"] = [camelize(link.to_dict()) for link in result.invite_links]
    return response


@router.get("")
async def list_plans(
    initiator_id: str = Query(..., alias="initiatorId"),
    include_archived: bool = Query(False, alias="includeArchived"),
    controller: PlanLifecycleController = Depends(get_controller)
) -> List[Dict[str, Any]]:
    """主催者のプラン一覧"""
    plans = await controller.list_plans(initiator_id, include_archived=include_archived)
    return [plan_response(plan) for plan in plans]


@router.post("/auto-archive")
async def auto_archive(controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """保持期間を過ぎたプランの自動アーカイブ"""
    return {"archived": await controller.auto_archive()}


@router.get("/{plan_id}")
async def get_plan(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """プラン取得"""
    return plan_response(await controller.get_plan(plan_id))


@router.patch("/{plan_id}")
async def update_plan(
    plan_id: str,
    body: UpdatePlanRequest,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """確定前のプラン更新"""
    plan = await controller.update_plan(plan_id, **body.model_dump())
    return plan_response(plan)


@router.delete("/{plan_id}")
async def cancel_plan(
    plan_id: str,
    actor: str = Query(...),
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """プランのキャンセル"""
    await controller.cancel(plan_id, actor)
    return {"cancelled": True}


@router.post("/{plan_id}/finalize")
async def finalize_plan(
    plan_id: str,
    body: FinalizeRequest,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """日程確定"""
    return plan_response(await controller.finalize(plan_id, body.chosen_time, body.actor))


@router.post("/{plan_id}/complete")
async def complete_plan(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """開催済みにする"""
    return plan_response(await controller.complete(plan_id))


@router.post("/{plan_id}/archive")
async def archive_plan(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """アーカイブ"""
    return plan_response(await controller.archive(plan_id))


@router.post("/{plan_id}/unarchive")
async def unarchive_plan(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """アーカイブ解除"""
    return plan_response(await controller.unarchive(plan_id))


@router.post("/{plan_id}/retry-invalidation")
async def retry_invalidation(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """キャンセル済みプランのトークン無効化を再実行"""
    return {"invalidated": await controller.retry_token_invalidation(plan_id)}


# 招待者

@router.post("/{plan_id}/invitees", status_code=201)
async def add_invitee(
    plan_id: str,
    body: InviteeRequest,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """招待者の追加"""
    link = await controller.add_invitee(plan_id, body.contact_ref, body.display_name, body.attendance_type)
    return camelize(link.to_dict())


@router.delete("/{plan_id}/invitees/{contact_ref}")
async def remove_invitee(
    plan_id: str,
    contact_ref: str,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """招待者の削除"""
    return plan_response(await controller.remove_invitee(plan_id, contact_ref))


@router.put("/{plan_id}/invitees/{contact_ref}/attendance")
async def update_attendance(
    plan_id: str,
    contact_ref: str,
    body: AttendanceRequest,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """招待者の出席区分変更"""
    return plan_response(await controller.update_invitee_attendance(plan_id, contact_ref, body.attendance_type))


@router.post("/{plan_id}/reminders")
async def send_reminders(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """未回答者へのリマインダー送信"""
    result = await controller.send_reminders(plan_id)
    return camelize(result.model_dump())


# 空き時間・集計

@router.post("/{plan_id}/availability")
async def submit_availability(
    plan_id: str,
    body: SubmitAvailabilityRequest,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """参加者の空き時間提出"""
    await controller.submit_availability(
        plan_id,
        body.participant_id,
        body.slots,
        source=body.source,
        calendar_slots=body.calendar_slots,
        manual_slots=body.manual_slots
    )
    return {"accepted": True}


@router.get("/{plan_id}/availability")
async def get_availability(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """空き時間一覧"""
    summary = await controller.get_availability(plan_id)
    return camelize(summary.model_dump())


@router.get("/{plan_id}/overlap")
async def get_overlap(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """重複レポート"""
    report = await controller.aggregate(plan_id)
    return camelize(report.to_dict())


@router.get("/{plan_id}/conflicts")
async def get_conflicts(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """必須参加者ベースの競合分析"""
    analysis = await controller.analyze_conflicts(plan_id)
    return camelize(analysis.to_dict())


@router.get("/{plan_id}/ready")
async def get_ready(plan_id: str, controller: PlanLifecycleController = Depends(get_controller)) -> Dict[str, Any]:
    """確定可能かどうか"""
    return {"ready": await controller.is_ready_to_finalize(plan_id)}


@availability_router.post("/{token}")
async def submit_with_token(
    token: str,
    body: SlotsRequest,
    controller: PlanLifecycleController = Depends(get_controller)
) -> Dict[str, Any]:
    """招待リンク経由の空き時間提出"""
    await controller.submit_availability_with_token(
        token,
        body.slots,
        source=body.source,
        calendar_slots=body.calendar_slots,
        manual_slots=body.manual_slots
    )
    return {"accepted": True}


# エラーハンドリング

def status_code_for(error: SchedulingError) -> int:
    """エラー種別に対応するHTTPステータス"""
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, IllegalTransitionError):
        return 409
    if isinstance(error, PartialCancellationError):
        return 502
    if isinstance(error, TransientInfrastructureError):
        return 503
    return 409


async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    """日程調整エラーをJSONレスポンスに変換"""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} 失敗: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} 拒否 ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content=camelize(exc.to_dict()))


def register_exception_handlers(app: FastAPI) -> None:
    """例外ハンドラーを登録"""
    app.add_exception_handler(SchedulingError, scheduling_error_handler)
