"""
HTTP routes exposing the engine to admin tooling.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response

from dualsync.dependencies import get_engine
from dualsync.engine import SyncEngine
from dualsync.errors import InvalidRecordError, RecordNotFound
from dualsync.schemas import (
    AttemptPayload,
    BulkOutcomeResponse,
    HealthResponse,
    RecordResponse,
    SaveOutcomeResponse,
    UserPayload,
)
from dualsync.types import SETTINGS_KEY, BulkOutcome, SaveOutcome, WriteStatus

logger = logging.getLogger(__name__)

router = APIRouter()

_STATUS_CODES = {
    WriteStatus.SUCCESS: 200,
    WriteStatus.PARTIAL_FAILURE: 200,
    WriteStatus.TOTAL_FAILURE: 502,
    WriteStatus.SKIPPED: 503,
}


def _save_response(outcome: SaveOutcome, response: Response) -> SaveOutcomeResponse:
    response.status_code = _STATUS_CODES[outcome.status]
    if outcome.status == WriteStatus.TOTAL_FAILURE and outcome.errors:
        errors = outcome.errors.values()
        if all(isinstance(e, RecordNotFound) for e in errors):
            response.status_code = 404
        elif all(isinstance(e, InvalidRecordError) for e in errors):
            response.status_code = 422
    return SaveOutcomeResponse(**outcome.as_dict())


def _bulk_response(outcome: BulkOutcome, response: Response) -> BulkOutcomeResponse:
    response.status_code = _STATUS_CODES[outcome.status]
    return BulkOutcomeResponse(**outcome.as_dict())


def _found(key: str, value: Any) -> RecordResponse:
    if value is None:
        raise HTTPException(status_code=404, detail=f"{key} not found")
    return RecordResponse(key=key, value=value)


@router.get("/health", response_model=HealthResponse)
def health(engine: SyncEngine = Depends(get_engine)):
    return HealthResponse(**engine.status())


@router.post("/users", response_model=SaveOutcomeResponse)
async def save_user(
    payload: UserPayload,
    response: Response,
    engine: SyncEngine = Depends(get_engine),
):
    outcome = await engine.save_user(payload.model_dump(exclude_none=True))
    return _save_response(outcome, response)


@router.get("/users/by-email", response_model=RecordResponse)
async def get_user_by_email(
    email: str = Query(..., min_length=3),
    engine: SyncEngine = Depends(get_engine),
):
    return _found(email, await engine.get_user_by_email(email))


@router.get("/users/{user_id}", response_model=RecordResponse)
async def get_user(user_id: str, engine: SyncEngine = Depends(get_engine)):
    return _found(user_id, await engine.get_user_by_id(user_id))


@router.post("/users/{user_id}/activity", response_model=SaveOutcomeResponse)
async def touch_user_activity(
    user_id: str,
    response: Response,
    engine: SyncEngine = Depends(get_engine),
):
    return _save_response(await engine.touch_user_activity(user_id), response)


@router.post("/users/{user_id}/test-results", response_model=SaveOutcomeResponse)
async def record_test_result(
    user_id: str,
    payload: AttemptPayload,
    response: Response,
    engine: SyncEngine = Depends(get_engine),
):
    outcome = await engine.record_test_result(user_id, payload.model_dump())
    return _save_response(outcome, response)


@router.put("/settings", response_model=SaveOutcomeResponse)
async def save_settings(
    response: Response,
    settings: Dict[str, Any] = Body(...),
    engine: SyncEngine = Depends(get_engine),
):
    return _save_response(await engine.save_settings(settings), response)


@router.get("/settings", response_model=RecordResponse)
async def get_settings(engine: SyncEngine = Depends(get_engine)):
    return _found(SETTINGS_KEY, await engine.get_system_settings())


@router.post("/content/bulk", response_model=BulkOutcomeResponse)
async def save_content_bulk(
    response: Response,
    updates: Dict[str, Any] = Body(...),
    engine: SyncEngine = Depends(get_engine),
):
    if not updates:
        raise HTTPException(status_code=422, detail="no content to save")
    return _bulk_response(await engine.save_content_bulk(updates), response)


@router.put("/content/{key}", response_model=SaveOutcomeResponse)
async def save_content(
    key: str,
    response: Response,
    data: Any = Body(...),
    engine: SyncEngine = Depends(get_engine),
):
    return _save_response(await engine.save_content_one(key, data), response)


@router.get("/content/{key}", response_model=RecordResponse)
async def get_content(key: str, engine: SyncEngine = Depends(get_engine)):
    return _found(key, await engine.get_content(key))
