from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from .types import ClassificationResult


class DoorState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class StateMapping:
    """Fixed class-index to door-state lookup.

    The model's class order is the contract; label text reported by the
    classifier is operator supplied and never drives the door state.
    """

    states: tuple[DoorState, ...] = (DoorState.OPEN, DoorState.CLOSED)
    fallback: DoorState = DoorState.CLOSED

    def state_for(self, index: int) -> DoorState:
        if 0 <= index < len(self.states):
            return self.states[index]
        return self.fallback

    @classmethod
    def from_names(cls, names: Iterable[Any]) -> "StateMapping":
        states = tuple(DoorState(str(name).strip().lower()) for name in names)
        if not states:
            raise ValueError("state mapping requires at least one entry")
        return cls(states=states)


@dataclass(frozen=True)
class Prediction:
    top_label: str
    top_probability: float
    door_state: DoorState
    class_index: int = 0

    @property
    def confidence(self) -> float:
        return round(self.top_probability * 100.0, 1)

    @property
    def output(self) -> int:
        return 0 if self.class_index == 0 else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "class": self.top_label,
            "class_index": self.class_index,
            "probability": self.top_probability,
            "confidence": format_confidence(self.top_probability),
            "door_state": self.door_state.value,
        }


def format_confidence(probability: float) -> str:
    return f"{probability * 100.0:.1f}"


def select_top(result: ClassificationResult) -> tuple[int, str, float] | None:
    """Return (index, label, probability) of the first maximum entry."""
    best: tuple[int, str, float] | None = None
    for index, (label, probability) in enumerate(result):
        probability = float(probability)
        # Strict comparison keeps the earliest entry on exact ties.
        if best is None or probability > best[2]:
            best = (index, str(label), probability)
    return best


def interpret(
    result: ClassificationResult, mapping: StateMapping | None = None
) -> Prediction | None:
    top = select_top(result)
    if top is None:
        return None
    index, label, probability = top
    door_state = (mapping or StateMapping()).state_for(index)
    return Prediction(
        top_label=label,
        top_probability=probability,
        door_state=door_state,
        class_index=index,
    )


__all__ = [
    "DoorState",
    "Prediction",
    "StateMapping",
    "format_confidence",
    "interpret",
    "select_top",
]
