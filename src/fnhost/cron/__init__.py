"""fnhost cron module -- Zeitgesteuerte Funktionsaufrufe."""

from fnhost.cron.engine import Scheduler
from fnhost.cron.jobs import ScheduleStore

__all__ = ["ScheduleStore", "Scheduler"]
