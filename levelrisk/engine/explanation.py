"""
Explanation Generator — deterministic plain-language paraphrase of an Evaluation.

Each triggered rule contributes one clause rendered from its template and the
facts its condition produced (values, durations, timestamps). Rule codes are
never shown. Data gaps append a closing sentence stating that risk was raised
because sensor data is missing.
"""

from datetime import datetime
from typing import Any, Dict, List

from levelrisk.clock import format_ts
from levelrisk.engine.aggregator import band_for
from levelrisk.engine.conditions import DataGap
from levelrisk.engine.evaluator import Evaluation, RuleMatch
from levelrisk.engine.rules import ConditionKind, Rule
from levelrisk.schemas.location import LocationRef

# Fallback clause per condition kind, used when a rule ships no template or
# its template references a fact the condition did not produce.
KIND_TEMPLATES: Dict[ConditionKind, str] = {
    ConditionKind.EVENT_PRESENT: "{event} reported {minutes_ago} minutes ago on level {level}",
    ConditionKind.EVENT_COUNT: "{count} {event} events within {window_minutes} minutes on level {level}",
    ConditionKind.EVENT_SCHEDULED: "{event} in {minutes_until} minutes for level {level}",
    ConditionKind.EVENT_UNCLEARED: "{event} at {occurred_at} with no {companion} since",
    ConditionKind.EVENT_UNPERMITTED: "{event} at {occurred_at} without a prior {companion}",
    ConditionKind.ACTIVITY_STATUS: "{activity} is {status} since {status_since}",
    ConditionKind.MEASUREMENT_THRESHOLD: "{sensor} levels {direction} {threshold} {unit} for {duration_minutes} minutes",
    ConditionKind.COMPOUND: "{name}",
}

UNCERTAIN_TEMPLATE = "{name} assumed present because {sensor} data is missing"
NO_RISK_TEXT = "no active risk conditions"


def _format_value(value: Any) -> str:
    if value is None:
        return "unknown"
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _sentence_case(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


class ExplanationGenerator:
    """Pure function of the Evaluation; same input, same string."""

    def render(self, evaluation: Evaluation) -> str:
        score = evaluation.score
        if evaluation.forced:
            prefix = f"LOCKOUT ({score})"
        else:
            prefix = f"{band_for(score).value.upper()} risk ({score})"

        clauses = [self._clause(match, evaluation.location) for match in evaluation.matches]
        body = "; ".join(clauses) if clauses else NO_RISK_TEXT
        text = f"{prefix}: {_sentence_case(body)}."

        if evaluation.gaps:
            text += " " + self.gap_sentence(list(evaluation.gaps))
        return text

    def gap_sentence(self, gaps: List[DataGap]) -> str:
        parts = []
        for gap in sorted(gaps, key=lambda g: str(g.sensor_type)):
            if gap.since is not None:
                parts.append(f"no {gap.sensor_type} reading since {format_ts(gap.since)}")
            else:
                parts.append(f"no {gap.sensor_type} reading within the evaluation window")
        return "Risk elevated due to incomplete sensor data: " + "; ".join(parts) + "."

    def cause_text(self, evaluation: Evaluation) -> str:
        """Short cause line for alerts: the rule names, in evaluation order."""
        return "; ".join(m.rule.name for m in evaluation.matches)

    def _clause(self, match: RuleMatch, location: str) -> str:
        rule: Rule = match.rule
        ref = LocationRef.parse(location)
        facts = {key: _format_value(value) for key, value in match.outcome.facts.items()}
        facts.update(name=rule.name, level=str(ref.level), structure=ref.structure)

        if match.uncertain:
            facts.setdefault("sensor", "sensor")
            return UNCERTAIN_TEMPLATE.format(**facts)

        for template in (rule.explanation, KIND_TEMPLATES.get(rule.condition.kind, "{name}")):
            if not template:
                continue
            try:
                return template.format(**facts)
            except (KeyError, IndexError, ValueError):
                continue
        return rule.name
