"""
Orchestration Jobs

Key Components:
- JobRunner: Daily sync, LLM scoring and initiative generation runs
- JobRun: Run state machine
- JobReport: Aggregated per-run outcome and cron response body
"""

from .runner import JobReport, JobRun, JobRunner

__all__ = ["JobReport", "JobRun", "JobRunner"]
