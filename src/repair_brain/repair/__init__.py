"""Diagnosis, fix execution, prediction and learning for Repair Brain.

This package provides:
- DiagnosisEngine: Issue classification and repair option ranking
- RepairExecutor: Typed fix dispatch, verification and history
- Predictor: Precursor-based early warnings
- Learner: Knowledge base updates and repair statistics
"""
