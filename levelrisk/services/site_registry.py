"""
Location registry — resolves location references against the site layout.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from levelrisk.errors import ValidationError
from levelrisk.schemas.enums import SensorType
from levelrisk.schemas.location import LevelConfig, LocationRef, SiteConfig, StructureConfig

logger = structlog.get_logger(__name__)


class LocationRegistry:
    """Known levels of one site, keyed by ``"<STRUCTURE>:<level>"``."""

    def __init__(self, site: SiteConfig):
        self.site = site
        self._levels: Dict[str, LevelConfig] = {}
        self._structures: Dict[str, StructureConfig] = {}
        for structure in site.structures:
            self._structures[structure.code] = structure
            for level in structure.levels:
                key = LocationRef(structure.code, level.level).key
                if key in self._levels:
                    raise ValidationError(f"duplicate level {key} in site layout", field="structures")
                self._levels[key] = level

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "LocationRegistry":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        try:
            site = SiteConfig.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid site layout in {path}: {exc.errors()[0]['msg']}") from exc
        registry = cls(site)
        logger.info("site_layout_loaded", site_id=site.site_id, levels=len(registry._levels), path=str(path))
        return registry

    @property
    def site_id(self) -> str:
        return self.site.site_id

    def locations(self) -> List[str]:
        """All location keys in layout order."""
        return list(self._levels)

    def is_known(self, location: str) -> bool:
        return location in self._levels

    def resolve(self, location: str) -> LevelConfig:
        level = self._levels.get(location)
        if level is None:
            raise ValidationError(f"unknown location {location}", field="location", value=location)
        return level

    def installed_sensors(self, location: str) -> frozenset:
        return frozenset(SensorType(s) for s in self.resolve(location).sensors)

    def check_activity(self, location: str, activity: Optional[str]) -> None:
        """Inputs may only name activities the level declares."""
        if activity is None:
            return
        if activity not in self.resolve(location).activities:
            raise ValidationError(
                f"activity {activity!r} is not declared for {location}",
                field="activity",
                value=activity,
            )

    def structure(self, code: str) -> StructureConfig:
        structure = self._structures.get(code)
        if structure is None:
            raise ValidationError(f"unknown structure {code}", field="structure", value=code)
        return structure

    def locations_in(self, structure_code: str) -> List[str]:
        prefix = f"{structure_code}:"
        return [key for key in self._levels if key.startswith(prefix)]
