"""
Alerting — alerts derived from elevated risk states.

Components:
- schemas.py: Alert model and status enums
- dedup.py: cause keys, fingerprints and suppression
- repository.py: alert persistence and queries
- lifecycle.py: state machine, auto-raise and auto-resolve
"""
