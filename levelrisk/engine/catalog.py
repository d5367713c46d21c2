"""
Rule Catalog — versioned, immutable rule sets.

Every activation produces a new RuleCatalogVersion with an effective_from
instant; the previous version is closed at that instant. Versions are never
edited in place: publishing swaps the whole version tuple, so readers always
see either the old or the new catalog, never a mix.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from levelrisk.engine.rules import CATEGORY_ORDER, Rule
from levelrisk.errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

_OVERRIDE_KEYS = {"enabled", "thresholds"}


class RuleCatalogVersion(BaseModel):
    """An immutable, versioned bundle of rules plus per-site overrides."""

    model_config = ConfigDict(frozen=True)

    version: int = Field(..., ge=1)
    effective_from: datetime
    effective_to: Optional[datetime] = None
    rules: Tuple[Rule, ...] = ()
    site_overrides: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)

    def covers(self, ts: datetime) -> bool:
        return self.effective_from <= ts and (self.effective_to is None or ts < self.effective_to)

    def rule(self, code: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.code == code:
                return rule
        return None

    def rules_for_site(self, site_id: str) -> List[Rule]:
        """Rules with this site's overrides applied, in declaration order."""
        overrides = self.site_overrides.get(site_id, {})
        return [rule.with_overrides(overrides.get(rule.code, {})) for rule in self.rules]

    def lookback_minutes(self, site_id: str) -> float:
        """Widest input window any enabled rule reads."""
        windows = [r.lookback_minutes for r in self.rules_for_site(site_id) if r.enabled]
        return max(windows, default=1.0)

    def content_hash(self) -> str:
        """
        Hash of the rule set.

        SHA-256 over sorted ``code:version:enabled:impact:definition`` lines
        plus the canonical overrides.
        """
        lines = sorted(
            f"{r.code}:{r.version}:{r.enabled}:{r.impact_value}:{r.definition_hash()}"
            for r in self.rules
        )
        lines.append(json.dumps(self.site_overrides, sort_keys=True, separators=(",", ":")))
        return hashlib.sha256("|".join(lines).encode()).hexdigest()


def parse_catalog_payload(payload: Dict[str, Any]) -> Tuple[List[Rule], Dict[str, Dict[str, Dict[str, Any]]]]:
    """
    Parse a ``{"rules": [...], "site_overrides": {...}}`` document.

    Raises:
        ValidationError: on any malformed rule.
    """
    raw_rules = payload.get("rules")
    if not isinstance(raw_rules, list):
        raise ValidationError("catalog document needs a 'rules' list", field="rules")
    rules: List[Rule] = []
    for index, raw in enumerate(raw_rules):
        try:
            rules.append(Rule.model_validate(raw))
        except PydanticValidationError as exc:
            raise ValidationError(
                f"rule #{index} is invalid: {exc.errors()[0]['msg']}",
                field=f"rules[{index}]",
            ) from exc
    overrides = payload.get("site_overrides") or {}
    if not isinstance(overrides, dict):
        raise ValidationError("site_overrides must be an object", field="site_overrides")
    return rules, overrides


class RuleCatalog:
    """
    Holds every catalog version and answers "which rules were in effect at T".

    Usage:
        catalog = RuleCatalog()
        catalog.activate(rules, effective_from=datetime(2026, 1, 1))
        version = catalog.catalog_at(datetime(2026, 1, 20, 10, 0))
    """

    def __init__(self, versions: Iterable[RuleCatalogVersion] = ()):
        self._versions: Tuple[RuleCatalogVersion, ...] = tuple(
            sorted(versions, key=lambda v: v.version)
        )

    @property
    def versions(self) -> Tuple[RuleCatalogVersion, ...]:
        return self._versions

    def current(self) -> Optional[RuleCatalogVersion]:
        return self._versions[-1] if self._versions else None

    def get(self, version: int) -> RuleCatalogVersion:
        for candidate in self._versions:
            if candidate.version == version:
                return candidate
        raise NotFoundError("rule_catalog_version", str(version))

    def catalog_at(self, ts: datetime) -> RuleCatalogVersion:
        """Version in effect at ``ts``."""
        for candidate in reversed(self._versions):
            if candidate.covers(ts):
                return candidate
        raise NotFoundError("rule_catalog_version", f"at {ts.isoformat()}")

    # ── Activation ────────────────────────────────────────────────────────

    def build_version(
        self,
        rules: List[Rule],
        effective_from: datetime,
        site_overrides: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None,
        not_before: Optional[datetime] = None,
    ) -> Tuple[RuleCatalogVersion, Optional[RuleCatalogVersion]]:
        """
        Validate and build the next version without publishing it.

        Returns:
            (new_version, previous_version_closed_at_effective_from or None)
        """
        site_overrides = site_overrides or {}
        current = self.current()

        if current is not None and effective_from <= current.effective_from:
            raise ValidationError(
                "effective_from must be after the current catalog version's start",
                field="effective_from",
                value=effective_from.isoformat(),
            )
        if not_before is not None and effective_from <= not_before:
            raise ValidationError(
                "effective_from would rewrite already-audited computations",
                field="effective_from",
                value=effective_from.isoformat(),
            )

        codes = [r.code for r in rules]
        duplicates = sorted({c for c in codes if codes.count(c) > 1})
        if duplicates:
            raise ValidationError(f"duplicate rule codes: {duplicates}", field="rules")

        self._check_overrides(rules, site_overrides)

        versioned = [self._assign_version(rule, current) for rule in rules]
        # Declaration order within category, categories in evaluation order.
        versioned.sort(key=lambda r: CATEGORY_ORDER.index(r.category))

        new_version = RuleCatalogVersion(
            version=(current.version + 1) if current else 1,
            effective_from=effective_from,
            rules=tuple(versioned),
            site_overrides=site_overrides,
        )
        closed = current.model_copy(update={"effective_to": effective_from}) if current else None
        return new_version, closed

    def publish(self, new_version: RuleCatalogVersion, closed: Optional[RuleCatalogVersion]) -> None:
        versions = list(self._versions)
        if closed is not None:
            versions[-1] = closed
        versions.append(new_version)
        self._versions = tuple(versions)
        logger.info(
            "rule_catalog_activated",
            version=new_version.version,
            effective_from=new_version.effective_from.isoformat(),
            rule_count=len(new_version.rules),
            content_hash=new_version.content_hash()[:16],
        )

    def reload(self, versions: Iterable[RuleCatalogVersion]) -> None:
        """Replace every version with the persisted set, e.g. after another process activated one."""
        previous = self.current()
        self._versions = tuple(sorted(versions, key=lambda v: v.version))
        current = self.current()
        logger.info(
            "rule_catalog_reloaded",
            previous_version=previous.version if previous else None,
            version=current.version if current else None,
        )

    def activate(
        self,
        rules: List[Rule],
        effective_from: datetime,
        site_overrides: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None,
        not_before: Optional[datetime] = None,
    ) -> RuleCatalogVersion:
        new_version, closed = self.build_version(rules, effective_from, site_overrides, not_before)
        self.publish(new_version, closed)
        return new_version

    @staticmethod
    def _assign_version(rule: Rule, current: Optional[RuleCatalogVersion]) -> Rule:
        previous = current.rule(rule.code) if current else None
        if previous is None:
            version = 1
        elif previous.definition_hash() == rule.definition_hash():
            version = previous.version
        else:
            version = previous.version + 1
        return rule.model_copy(update={"version": version})

    @staticmethod
    def _check_overrides(rules: List[Rule], site_overrides: Dict[str, Dict[str, Dict[str, Any]]]) -> None:
        by_code = {r.code: r for r in rules}
        for site_id, per_rule in site_overrides.items():
            if not isinstance(per_rule, dict):
                raise ValidationError(f"overrides for site {site_id} must be an object", field="site_overrides")
            for code, block in per_rule.items():
                rule = by_code.get(code)
                if rule is None:
                    raise ValidationError(f"override for unknown rule {code}", field=f"site_overrides.{site_id}")
                if not isinstance(block, dict) or set(block) - _OVERRIDE_KEYS:
                    raise ValidationError(
                        f"override for {code} may only set {sorted(_OVERRIDE_KEYS)}",
                        field=f"site_overrides.{site_id}.{code}",
                    )
                if "enabled" in block and not isinstance(block["enabled"], bool):
                    raise ValidationError(f"override enabled for {code} must be boolean", field=f"site_overrides.{site_id}.{code}")
                for key, value in block.get("thresholds", {}).items():
                    if key not in rule.thresholds:
                        raise ValidationError(
                            f"override for {code} names unknown threshold {key}",
                            field=f"site_overrides.{site_id}.{code}.thresholds",
                        )
                    if isinstance(value, bool) or not isinstance(value, (int, float)):
                        raise ValidationError(
                            f"threshold {key} for {code} must be numeric",
                            field=f"site_overrides.{site_id}.{code}.thresholds",
                            value=value,
                        )
