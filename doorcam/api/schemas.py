from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field


class PredictionModel(BaseModel):
    output: int = Field(..., description="0 for class index 0, otherwise 1")
    class_: str = Field(..., alias="class", description="Label reported by the model")
    class_index: int
    probability: float
    confidence: str = Field(..., description="Probability x 100 with one decimal")
    door_state: str


class FeedStatusResponse(BaseModel):
    running: bool
    lifecycle: str
    model_loaded: bool
    door_state: str
    error: str | None = None
    error_kind: str | None = None
    prediction: PredictionModel | None = None

    @classmethod
    def from_status(cls, payload: Dict[str, Any]) -> "FeedStatusResponse":
        return cls.model_validate(payload)


__all__ = ["FeedStatusResponse", "PredictionModel"]
