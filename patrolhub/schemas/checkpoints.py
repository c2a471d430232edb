from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..config import settings


class CheckpointPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class CheckpointType(str, Enum):
    entrance = "entrance"
    exit = "exit"
    perimeter = "perimeter"
    internal = "internal"
    emergency = "emergency"


class CheckpointBase(BaseModel):
    location: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    priority: Optional[CheckpointPriority] = None
    checkpoint_type: Optional[CheckpointType] = None
    geofence_radius: Optional[int] = Field(default=None, ge=1, le=10000)
    is_geofence_enabled: Optional[bool] = None
    max_assigned_guards: Optional[int] = Field(default=None, ge=1, le=10)
    patrol_frequency: Optional[int] = Field(default=None, ge=1, le=1440)


class CheckpointCreate(CheckpointBase):
    name: str = Field(min_length=2, max_length=100)
    location: str = Field(min_length=1, max_length=200)
    is_active: bool = True

    @model_validator(mode="after")
    def _both_or_neither(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


class CheckpointUpdate(CheckpointBase):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    is_active: Optional[bool] = None


class AssignmentItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    checkpoint_id: str = Field(alias="checkpointId")
    guard_id: str = Field(alias="guardId")


class BulkAssignRequest(BaseModel):
    assignments: List[AssignmentItem] = Field(min_length=1, max_length=settings.bulk_max_items)


class BulkUnassignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    guard_ids: List[str] = Field(alias="guardIds", min_length=1, max_length=settings.bulk_max_items)
