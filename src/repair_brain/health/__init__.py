"""Health monitoring and persistence for Repair Brain.

This package provides:
- Monitor: Sliding metric windows and health reports
- Analyzers: Per-category pattern classification
- SnapshotCollector: Process vitals for before/after comparison
- RepairStorage: PostgreSQL persistence for patterns, history, predictions, knowledge
"""
