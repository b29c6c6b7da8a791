"""Pydantic request models for API endpoints."""

from pydantic import BaseModel, model_validator


class TurnBody(BaseModel):
    message: str = ""
    gesture: str | None = None
    fast_forward: bool = False

    @model_validator(mode="after")
    def _message_or_gesture(self) -> "TurnBody":
        if not self.message and not self.gesture:
            raise ValueError("message or gesture is required")
        return self


class ActionBody(BaseModel):
    paused: bool
