"""
LevelRisk scoring engine — declarative rules, deterministic scores.

Components:
- rules: Rule and condition models, categories, impact types
- catalog: Versioned rule catalog with effective-time lookup
- conditions: Tri-state condition evaluation (matched / uncertain / clear)
- evaluator: Lockout short-circuit, additive categories, cap at 100
- aggregator: Band mapping, structure and site roll-up
- explanation: Plain-language paraphrase of an evaluation
- risk_engine: Single entry point shared by live and historical scoring
"""
