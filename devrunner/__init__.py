"""
DevRunner: Autonomous Development Run Orchestrator

Turns an approved product plan into a sequence of executed, gated,
committed and deployed code iterations:
- Agent pipeline (Spec -> Test -> Code -> Review) per iteration
- Quality gate chain (BUILD -> UNIT -> BDD, plus REVIEW/SECURITY scans)
- Git release via CLI with pull request merge and deploy trigger
- Append-only run event log for UI replay

Distribution: Available as both Python library and CLI
"""

__version__ = "0.1.0"
__all__ = [
    "__version__",
]
