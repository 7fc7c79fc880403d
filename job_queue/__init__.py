"""
Reminder scheduling — Durable deferred notifications.

One min-heap dispatch loop per process drives every reminder; the reminder
store is the source of truth and survives restarts.
"""
from job_queue.scheduler import ReminderScheduler, ReminderValidationError

__all__ = ["ReminderScheduler", "ReminderValidationError"]
