"""Sizing parameters chosen by the workspace owner."""
from __future__ import annotations

from typing import Any, Dict, Literal, Mapping

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ValidationError

CPU_CORE_OPTIONS = (2, 4, 6, 8)
MEMORY_GB_OPTIONS = (2, 4, 6, 8)
HOME_DISK_GB_MIN = 1
HOME_DISK_GB_MAX = 99999

# Keys used by the dashboard front-end for the same values.
_FRONTEND_ALIASES = {
    "cpu": "cpu_cores",
    "memory": "memory_gb",
    "home_disk_size": "home_disk_gb",
}


class SizingParameters(BaseModel):
    """Validated CPU, memory and home-disk sizing for one workspace."""

    model_config = ConfigDict(frozen=True, strict=True, extra="forbid")

    cpu_cores: Literal[2, 4, 6, 8] = Field(4, description="Number of CPU cores")
    memory_gb: Literal[2, 4, 6, 8] = Field(2, description="Memory in GB")
    home_disk_gb: int = Field(10, ge=HOME_DISK_GB_MIN, le=HOME_DISK_GB_MAX, description="Home disk size in GB")

    def as_dict(self) -> Dict[str, int]:
        return self.model_dump()


def validate_parameters(raw: Mapping[str, Any]) -> SizingParameters:
    """Validate raw parameters, failing before anything external is touched."""

    if not isinstance(raw, Mapping):
        raise ValidationError(f"Sizing parameters must be a mapping, got {type(raw).__name__}")
    normalized: Dict[str, Any] = {}
    for key, value in raw.items():
        target = _FRONTEND_ALIASES.get(key, key)
        if target in normalized:
            raise ValidationError(f"Parameter {target!r} supplied more than once")
        normalized[target] = value
    try:
        return SizingParameters.model_validate(normalized)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'parameters'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(f"Invalid sizing parameters: {problems}") from exc


__all__ = [
    "CPU_CORE_OPTIONS",
    "MEMORY_GB_OPTIONS",
    "HOME_DISK_GB_MIN",
    "HOME_DISK_GB_MAX",
    "SizingParameters",
    "validate_parameters",
]
