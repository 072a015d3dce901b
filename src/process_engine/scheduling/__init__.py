"""
Cron scheduling
"""
from .cron import (
    PRESETS, build_trigger, compute_next, describe_cron, list_presets, next_fire_times,
    preset_to_cron, validate_schedule,
)
from .scheduler import CronScheduler

__all__ = [
    "PRESETS", "build_trigger", "compute_next", "describe_cron", "list_presets",
    "next_fire_times", "preset_to_cron", "validate_schedule", "CronScheduler",
]
