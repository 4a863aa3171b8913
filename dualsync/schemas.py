"""
Pydantic schemas for the admin HTTP API.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, max_length=128)
    email: Optional[str] = None


class AttemptPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    testId: str = Field(..., min_length=1, max_length=128)


class SaveOutcomeResponse(BaseModel):
    category: str
    key: str
    status: str
    written: List[str]
    failed: List[str]
    errors: Dict[str, str] = {}


class StoreCounts(BaseModel):
    succeeded: int
    failed: int


class BulkOutcomeResponse(BaseModel):
    category: str
    status: str
    counts: Dict[str, StoreCounts]
    keys: Dict[str, List[str]]


class RecordResponse(BaseModel):
    key: str
    value: Any


class StoreHealth(BaseModel):
    ready: bool
    reason: Optional[str] = None


class HealthResponse(BaseModel):
    ready: bool
    stores: Dict[str, StoreHealth]
