"""
Pipeline App - Run Orchestration

Responsibilities:
- Validate run parameters and compute the effective date window
- Sequence extract then load for each selected pipeline (members, channels)
- Aggregate a structured run report with timing
- Scheduled (cron) or single-shot execution via APScheduler

Usage:
    python -m apps.pipeline
    RUN_ONCE=true python -m apps.pipeline
"""
