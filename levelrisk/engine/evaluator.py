"""
Rule Evaluator — applies a catalog version to one location's context.

Order:
1. Lockout rules, in declaration order. The first one that matches (or is
   uncertain for lack of data) forces the score to 100 and stops evaluation.
2. Time-critical, environmental, behavioral rules. Every match adds its
   impact. Two rules reacting to the same cause both contribute.
3. Total capped at 100.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

import structlog

from levelrisk.engine.catalog import RuleCatalogVersion
from levelrisk.engine.conditions import (
    ConditionEvaluator,
    ConditionOutcome,
    DataGap,
    EvaluationContext,
)
from levelrisk.engine.rules import CATEGORY_ORDER, MatchState, Rule, RuleCategory

logger = structlog.get_logger(__name__)

MAX_SCORE = 100


@dataclass(frozen=True)
class RuleMatch:
    rule: Rule
    outcome: ConditionOutcome
    contribution: int

    @property
    def uncertain(self) -> bool:
        return self.outcome.state == MatchState.UNCERTAIN


@dataclass(frozen=True)
class Evaluation:
    """Result of evaluating one location at one instant."""
    location: str
    as_of: datetime
    catalog_version: int
    score: int
    forced: bool
    matches: Tuple[RuleMatch, ...] = ()
    gaps: Tuple[DataGap, ...] = ()
    event_ids: Tuple[str, ...] = field(default=())
    measurement_ids: Tuple[str, ...] = field(default=())


class RuleEvaluator:
    """Deterministic: same context and catalog version always give the same Evaluation."""

    def __init__(self, conditions: Optional[ConditionEvaluator] = None):
        self._conditions = conditions or ConditionEvaluator()

    def evaluate(
        self,
        ctx: EvaluationContext,
        catalog: RuleCatalogVersion,
        site_id: str,
    ) -> Evaluation:
        rules = [r for r in catalog.rules_for_site(site_id) if r.enabled]
        by_category = {category: [r for r in rules if r.category == category] for category in CATEGORY_ORDER}

        # ── 1. Lockout ────────────────────────────────────────────────
        for rule in by_category[RuleCategory.LOCKOUT]:
            outcome = self._conditions.evaluate(rule.condition, rule.thresholds, ctx)
            if outcome.state >= MatchState.UNCERTAIN:
                match = RuleMatch(rule=rule, outcome=outcome, contribution=MAX_SCORE)
                logger.debug("lockout_triggered", location=ctx.location, rule=rule.code, uncertain=match.uncertain)
                return self._build(ctx, catalog, MAX_SCORE, True, [match])

        # ── 2. Additive categories ────────────────────────────────────
        matches: List[RuleMatch] = []
        for category in CATEGORY_ORDER[1:]:
            for rule in by_category[category]:
                outcome = self._conditions.evaluate(rule.condition, rule.thresholds, ctx)
                if outcome.state >= MatchState.UNCERTAIN:
                    matches.append(RuleMatch(rule=rule, outcome=outcome, contribution=rule.impact_value))

        # ── 3. Cap ────────────────────────────────────────────────────
        total = sum(m.contribution for m in matches)
        return self._build(ctx, catalog, min(MAX_SCORE, total), False, matches)

    @staticmethod
    def _build(ctx, catalog, score, forced, matches) -> Evaluation:
        gaps: List[DataGap] = []
        for match in matches:
            gaps.extend(g for g in match.outcome.gaps if g not in gaps)
        return Evaluation(
            location=ctx.location,
            as_of=ctx.as_of,
            catalog_version=catalog.version,
            score=score,
            forced=forced,
            matches=tuple(matches),
            gaps=tuple(gaps),
            event_ids=tuple(sorted(e.id for e in ctx.events)),
            measurement_ids=tuple(sorted(m.id for m in ctx.measurements + ctx.last_readings)),
        )
