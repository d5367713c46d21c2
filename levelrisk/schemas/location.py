"""
Site layout schemas: Site → Structure(s) → Level(s).

A location reference is the string ``"<STRUCTURE>:<level>"``.
"""

import re
from dataclasses import dataclass
from typing import List

from pydantic import BaseModel, Field, field_validator

from levelrisk.schemas.enums import SensorType

LOCATION_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+:-?\d+$")


@dataclass(frozen=True)
class LocationRef:
    """Parsed location reference."""

    structure: str
    level: int

    @property
    def key(self) -> str:
        return f"{self.structure}:{self.level}"

    @classmethod
    def parse(cls, value: str) -> "LocationRef":
        if not LOCATION_PATTERN.match(value or ""):
            raise ValueError(f"invalid location reference: {value!r}")
        structure, level = value.rsplit(":", 1)
        return cls(structure=structure, level=int(level))


class LevelConfig(BaseModel):
    """One level of a structure, the sensors installed on it and the activities planned there."""

    level: int
    name: str = ""
    sensors: List[SensorType] = Field(default_factory=list)
    activities: List[str] = Field(default_factory=list)

    @field_validator("activities")
    @classmethod
    def _unique_activities(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("activity names must be unique per level")
        return v


class StructureConfig(BaseModel):
    """A shaft, pit or building with its levels."""

    code: str
    name: str = ""
    type: str = "shaft"
    levels: List[LevelConfig] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def _code_is_identifier(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z0-9_\-]+$", v):
            raise ValueError(f"invalid structure code: {v!r}")
        return v


class SiteConfig(BaseModel):
    """Full site layout, loaded from SITE_CONFIG_PATH."""

    site_id: str
    name: str = ""
    structures: List[StructureConfig] = Field(default_factory=list)
