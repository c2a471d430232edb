from typing import Optional

from pydantic import BaseModel, Field


class CheckInRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    checkpoint_id: Optional[str] = None
    shift_id: Optional[str] = None


class CheckOutRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class MarkRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class MarkOffRequest(BaseModel):
    guard_id: str
    shift_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)
