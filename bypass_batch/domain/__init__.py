"""
bypass_batch.domain -- Pure policy functions for the background loops.

ZERO I/O.
"""

from bypass_batch.domain.reminders import next_reminder_number

__all__ = ["next_reminder_number"]
