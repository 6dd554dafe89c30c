"""Power model output types and model configuration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ModelOutputType(IntEnum):
    """Kind of output a power model produces."""

    ABS_POWER = 1
    ABS_MODEL_WEIGHT = 2
    ABS_COMPONENT_POWER = 3
    ABS_COMPONENT_MODEL_WEIGHT = 4
    DYN_POWER = 5
    DYN_MODEL_WEIGHT = 6
    DYN_COMPONENT_POWER = 7
    DYN_COMPONENT_MODEL_WEIGHT = 8

    def __str__(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("_"))


_WEIGHT_TYPES = frozenset(
    {
        ModelOutputType.ABS_MODEL_WEIGHT,
        ModelOutputType.ABS_COMPONENT_MODEL_WEIGHT,
        ModelOutputType.DYN_MODEL_WEIGHT,
        ModelOutputType.DYN_COMPONENT_MODEL_WEIGHT,
    }
)

_COMPONENT_TYPES = frozenset(
    {
        ModelOutputType.ABS_COMPONENT_MODEL_WEIGHT,
        ModelOutputType.ABS_COMPONENT_POWER,
        ModelOutputType.DYN_COMPONENT_MODEL_WEIGHT,
        ModelOutputType.DYN_COMPONENT_POWER,
    }
)


def is_weight_type(output_type: ModelOutputType) -> bool:
    """Return True if the output type carries model weights."""
    return output_type in _WEIGHT_TYPES


def is_component_type(output_type: ModelOutputType) -> bool:
    """Return True if the output type is split per power component."""
    return output_type in _COMPONENT_TYPES


@dataclass
class ModelConfig:
    """Selection of a power model and where to load it from."""

    use_estimator_sidecar: bool = False
    selected_model: str = ""
    select_filter: str = ""
    init_model_url: str = ""