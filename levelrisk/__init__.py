"""
LevelRisk — Explainable per-level safety risk scoring.

Architecture:
    levelrisk/
    ├── api/             # FastAPI routers (HTTP layer)
    ├── db/              # SQLAlchemy models, engine, portable column types
    ├── middleware/       # Error handling, request context
    ├── schemas/         # Pydantic models (inputs, risk states, site layout)
    ├── engine/          # Rules, catalog, evaluator, aggregator, explanations
    ├── pipeline/        # Temporal store, audit log, historical replay
    ├── alerting/        # Alert lifecycle, cause-based deduplication
    └── services/        # Risk pipeline, location lanes, scheduler

Module Boundaries:
    - Scores come from declarative rules only, never from code constants
    - Live and historical scoring share one evaluation path
    - Every published RiskState has a write-once audit record
    - Missing sensor data raises risk, it never lowers it

Data Flow:
    Event/Measurement → Temporal Store → Rule Evaluator → Aggregator
    → Explanation → Audit Log → Alert Lifecycle → published RiskState

Version: 1.0.0
"""

__version__ = "1.0.0"
