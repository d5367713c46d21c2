"""
LevelRisk pipeline — storage, provenance and replay.

Components:
- temporal_store: Append-only Events/Measurements/Snapshots, retention
- evaluation: The single scoring path over stored inputs
- traceability: Hash-chained audit records with supersession
- replay: Historical reconstruction with divergence detection
"""
