from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..services.shift_window import TIME_PATTERN


class ShiftBase(BaseModel):
    break_duration: Optional[int] = Field(default=None, ge=0, le=240)
    grace_period: Optional[int] = Field(default=None, ge=0, le=60)
    overtime_threshold: Optional[int] = Field(default=None, ge=60, le=1440)
    color_code: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    description: Optional[str] = Field(default=None, max_length=500)


class ShiftCreate(ShiftBase):
    name: str = Field(min_length=2, max_length=50)
    start_time: str  # HH:MM:SS, local
    end_time: str
    is_active: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def _time_format(cls, v: str) -> str:
        if not TIME_PATTERN.match(v):
            raise ValueError("Times must be in HH:MM:SS format")
        return v


class ShiftUpdate(ShiftBase):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _time_format(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not TIME_PATTERN.match(v):
            raise ValueError("Times must be in HH:MM:SS format")
        return v
