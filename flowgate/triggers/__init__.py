"""Event, schedule and threshold triggers."""

from __future__ import annotations

from .cron import CronExpression
from .manager import TriggerManager
from .watchers import ScheduleWatcher, ThresholdWatcher

__all__ = ["CronExpression", "ScheduleWatcher", "ThresholdWatcher", "TriggerManager"]
