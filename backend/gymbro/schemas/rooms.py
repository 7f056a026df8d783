from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator


class CreateRoomRequest(BaseModel):
    name: str = Field(default="", max_length=200)
    workoutId: str | None = Field(default=None, max_length=128)
    maxCapacity: int | None = Field(default=None)
    privacy: Literal["friends_only", "invite_only", "public"] | None = Field(default=None)

    @field_validator("workoutId")
    @classmethod
    def normalize_workout_id(cls, value: str | None) -> str | None:
        normalized = (value or "").strip()
        return normalized or None


class ReadyRequest(BaseModel):
    isReady: bool = Field(default=True)


class MemberRequest(BaseModel):
    uid: str = Field(min_length=1, max_length=128)


class InviteRequest(BaseModel):
    inviteeUid: str = Field(min_length=1, max_length=128)


class MetricUpdateRequest(BaseModel):
    exercise: str = Field(default="", max_length=120)
    reps: int | float = Field(default=0)
    weight: int | float = Field(default=0)
    set: int | None = Field(default=None, ge=0, le=1000)


class ExerciseRequest(BaseModel):
    exercise: str | None = Field(default=None, max_length=120)
