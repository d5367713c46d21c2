"""
Aggregator — level scores to RiskState, structure and site summaries.

Level score is the evaluator output. Structure and site scores are the max
of their children: the worst level defines the risk of everything above it.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from levelrisk.engine.evaluator import Evaluation
from levelrisk.schemas.location import LocationRef, SiteConfig
from levelrisk.schemas.risk import (
    RiskBand,
    RiskState,
    SiteSummary,
    StructureSummary,
    TriggeredRule,
)

LOW_MAX = 30
MEDIUM_MAX = 70


def band_for(score: int) -> RiskBand:
    """The single score → band mapping (0–30 low, 31–70 medium, 71–100 high)."""
    if score <= LOW_MAX:
        return RiskBand.LOW
    if score <= MEDIUM_MAX:
        return RiskBand.MEDIUM
    return RiskBand.HIGH


BAND_RANK = {RiskBand.LOW: 0, RiskBand.MEDIUM: 1, RiskBand.HIGH: 2}


class Aggregator:
    """Builds RiskStates and rolls them up the site hierarchy."""

    def level_state(self, evaluation: Evaluation, explanation: str) -> RiskState:
        triggered = [
            TriggeredRule(
                rule_code=m.rule.code,
                rule_version=m.rule.version,
                category=str(m.rule.category),
                contribution=m.contribution,
                uncertain=m.uncertain,
                cited_inputs=list(m.outcome.cited),
            )
            for m in evaluation.matches
        ]
        return RiskState(
            location=evaluation.location,
            score=evaluation.score,
            band=band_for(evaluation.score),
            forced=evaluation.forced,
            triggered_rules=triggered,
            explanation=explanation,
            computed_at=evaluation.as_of,
            rule_catalog_version=evaluation.catalog_version,
            data_gaps=sorted({str(g.sensor_type) for g in evaluation.gaps}),
        )

    def structure_summary(
        self,
        code: str,
        states: Iterable[RiskState],
        name: str = "",
        open_alerts: int = 0,
    ) -> StructureSummary:
        states = list(states)
        worst = self._worst(states)
        return StructureSummary(
            code=code,
            name=name,
            score=worst.score if worst else 0,
            band=band_for(worst.score if worst else 0),
            worst_location=worst.location if worst else None,
            level_count=len(states),
            open_alerts=open_alerts,
        )

    def site_summary(
        self,
        site: SiteConfig,
        states: Iterable[RiskState],
        open_alerts_by_location: Optional[Dict[str, int]] = None,
        computed_at: Optional[datetime] = None,
    ) -> SiteSummary:
        """
        Roll level states up to structures and the site.

        Locations without a state yet count as score 0. Open alert counts
        only affect the summary, never the stored states.
        """
        open_alerts_by_location = open_alerts_by_location or {}
        states = list(states)
        by_structure: Dict[str, List[RiskState]] = {s.code: [] for s in site.structures}
        for state in states:
            ref = LocationRef.parse(state.location)
            by_structure.setdefault(ref.structure, []).append(state)

        structures = []
        for structure in site.structures:
            prefix = f"{structure.code}:"
            alerts = sum(n for loc, n in open_alerts_by_location.items() if loc.startswith(prefix))
            structures.append(
                self.structure_summary(
                    structure.code,
                    by_structure.get(structure.code, []),
                    name=structure.name,
                    open_alerts=alerts,
                )
            )

        worst = max(structures, key=lambda s: s.score, default=None)
        score = worst.score if worst else 0
        return SiteSummary(
            site_id=site.site_id,
            name=site.name,
            score=score,
            band=band_for(score),
            worst_location=worst.worst_location if worst else None,
            structures=structures,
            open_alerts=sum(open_alerts_by_location.values()),
            computed_at=computed_at or max((s.computed_at for s in states), default=datetime.min),
        )

    @staticmethod
    def _worst(states: List[RiskState]) -> Optional[RiskState]:
        if not states:
            return None
        # Ties resolve to the lexically first location so summaries are stable.
        return min(states, key=lambda s: (-s.score, s.location))
