"""
Risk Engine — single entry point for scoring a location.

Live evaluation, late-input recomputation and historical replay all go
through ``RiskEngine.assess``; there is no second scoring path.

Steps:
1. Evaluate rules (lockout short-circuit, additive categories, cap)
2. Render the explanation
3. Build the RiskState
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from levelrisk.engine.aggregator import Aggregator
from levelrisk.engine.catalog import RuleCatalogVersion
from levelrisk.engine.conditions import EvaluationContext
from levelrisk.engine.evaluator import Evaluation, RuleEvaluator
from levelrisk.engine.explanation import ExplanationGenerator
from levelrisk.schemas.risk import InputsConsumed, RiskState

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RiskAssessment:
    """Evaluation plus everything derived from it."""
    evaluation: Evaluation
    state: RiskState
    inputs: InputsConsumed
    cause: str

    @property
    def cited_inputs(self) -> list[str]:
        cited: set[str] = set()
        for match in self.evaluation.matches:
            cited.update(match.outcome.cited)
        return sorted(cited)


class RiskEngine:
    """Stateless orchestrator over evaluator, explanation generator and aggregator."""

    def __init__(
        self,
        evaluator: Optional[RuleEvaluator] = None,
        explainer: Optional[ExplanationGenerator] = None,
        aggregator: Optional[Aggregator] = None,
    ):
        self.evaluator = evaluator or RuleEvaluator()
        self.explainer = explainer or ExplanationGenerator()
        self.aggregator = aggregator or Aggregator()

    def assess(
        self,
        ctx: EvaluationContext,
        catalog: RuleCatalogVersion,
        site_id: str,
    ) -> RiskAssessment:
        # ── 1. Rules ──────────────────────────────────────────────────
        evaluation = self.evaluator.evaluate(ctx, catalog, site_id)

        # ── 2. Explanation ────────────────────────────────────────────
        explanation = self.explainer.render(evaluation)

        # ── 3. State ──────────────────────────────────────────────────
        state = self.aggregator.level_state(evaluation, explanation)

        inputs = InputsConsumed(
            event_ids=list(evaluation.event_ids),
            measurement_ids=list(evaluation.measurement_ids),
            window_start=ctx.input_span_start,
            window_end=ctx.as_of,
        )

        logger.debug(
            "location_assessed",
            location=ctx.location,
            as_of=ctx.as_of.isoformat(),
            score=state.score,
            band=state.band.value,
            catalog_version=catalog.version,
            triggered=state.rule_codes,
        )

        return RiskAssessment(
            evaluation=evaluation,
            state=state,
            inputs=inputs,
            cause=self.explainer.cause_text(evaluation),
        )
