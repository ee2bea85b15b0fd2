from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, Field

from optia.artifact_store import current_period_key, get_store
from optia.exceptions import InputShapeError, StorageError
from optia.logger import get_logger
from optia.models import STAGE_KINDS, Stage
from optia.pipeline import PipelineController
from optia.turn_service import TurnService

router = APIRouter()
logger = get_logger("api.plans")


class StateSaveRequest(BaseModel):
    period: Optional[str] = None
    conversationRef: Optional[str] = None
    state: Dict[str, Any]


class ValidateRequest(BaseModel):
    period: Optional[str] = None
    conversationRef: Optional[str] = None


class AssistantRequest(BaseModel):
    studentMessage: str = Field(min_length=1)
    currentDraft: Optional[Dict[str, Any]] = None
    upstreamContext: Optional[Dict[str, Any]] = None
    recentHistory: Optional[List[Dict[str, Any]]] = None
    period: Optional[str] = None
    conversationRef: Optional[str] = None
    confirmSwitch: Optional[bool] = None


def get_turn_service() -> TurnService:
    return TurnService(store=get_store())


def _stage(raw: str) -> Stage:
    try:
        return Stage.parse(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown stage: {raw}")


def _owner(owner: Optional[str]) -> str:
    if not owner or not owner.strip():
        raise HTTPException(status_code=400, detail="Missing X-Owner-Id header")
    return owner.strip()


def _storage_failure(exc: StorageError) -> HTTPException:
    logger.error("Artifact store failure: %s", exc.message)
    return HTTPException(status_code=500, detail=exc.get_user_message())


@router.get("/status")
async def get_status(period: Optional[str] = None, x_owner_id: str = Header(..., alias="X-Owner-Id")):
    owner = _owner(x_owner_id)
    try:
        return PipelineController(get_store()).pipeline_status(owner, period)
    except StorageError as exc:
        raise _storage_failure(exc)


@router.get("/{stage}/state")
async def get_stage_state(
    stage: str,
    period: Optional[str] = None,
    conversation_ref: Optional[str] = None,
    x_owner_id: str = Header(..., alias="X-Owner-Id"),
):
    """Stored draft with recency fallback across periods."""
    owner = _owner(x_owner_id)
    parsed = _stage(stage)
    period_key = period or current_period_key()
    try:
        draft = get_store().resolve(owner, parsed, STAGE_KINDS[parsed].draft, period_key, conversation_ref)
    except StorageError as exc:
        raise _storage_failure(exc)

    if draft is None:
        return {"exists": False, "payload": None, "status": None, "updatedAt": None, "periodKey": period_key}
    return {
        "exists": True,
        "payload": draft.payload,
        "status": draft.status.value,
        "updatedAt": draft.updated_at,
        "periodKey": draft.period_key,
    }


@router.post("/{stage}/state")
async def save_stage_state(stage: str, request: StateSaveRequest, x_owner_id: str = Header(..., alias="X-Owner-Id")):
    owner = _owner(x_owner_id)
    parsed = _stage(stage)
    try:
        saved = get_store().put(
            owner,
            parsed,
            STAGE_KINDS[parsed].draft,
            request.period or current_period_key(),
            request.state,
            conversation_ref=request.conversationRef,
        )
    except InputShapeError as exc:
        raise HTTPException(status_code=400, detail=exc.get_user_message())
    except StorageError as exc:
        raise _storage_failure(exc)
    return {"saved": True, "updatedAt": saved.updated_at}


@router.delete("/{stage}/state")
async def clear_stage_state(stage: str, period: Optional[str] = None, x_owner_id: str = Header(..., alias="X-Owner-Id")):
    owner = _owner(x_owner_id)
    parsed = _stage(stage)
    try:
        cleared = get_store().delete(owner, parsed, STAGE_KINDS[parsed].draft, period or current_period_key())
    except StorageError as exc:
        raise _storage_failure(exc)
    return {"cleared": cleared}


@router.post("/{stage}/validate")
async def validate_stage(stage: str, request: ValidateRequest, x_owner_id: str = Header(..., alias="X-Owner-Id")):
    """valid=false results are user-actionable and come back with HTTP 200."""
    owner = _owner(x_owner_id)
    parsed = _stage(stage)
    try:
        result = PipelineController(get_store()).validate(
            owner, parsed, request.period, request.conversationRef
        )
    except StorageError as exc:
        raise _storage_failure(exc)
    return result.to_dict()


@router.post("/{stage}/assistant")
def stage_assistant(stage: str, request: AssistantRequest, x_owner_id: str = Header(..., alias="X-Owner-Id")):
    owner = _owner(x_owner_id)
    parsed = _stage(stage)
    try:
        result = get_turn_service().handle_turn(
            owner,
            parsed,
            request.studentMessage,
            current_draft=request.currentDraft,
            upstream_context=request.upstreamContext,
            recent_history=request.recentHistory,
            period_key=request.period,
            conversation_ref=request.conversationRef,
            confirm_switch=request.confirmSwitch,
        )
    except InputShapeError as exc:
        raise HTTPException(status_code=400, detail=exc.get_user_message())
    except StorageError as exc:
        raise _storage_failure(exc)
    return result.to_dict()
