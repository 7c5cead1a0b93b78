"""
bypass_batch -- Background loops of the approval engine.

Provides the timeout/escalation scheduler, the notification dispatcher
with its bounded queue and worker pool, the delivery recovery loop that
resends undelivered notifications, and the retention sweeper.

Architecture:
    bypass_batch/ is a top-level package.  It drives the kernel through
    ``WorkflowCoordinator`` and ``WorkflowStore`` only.  Nothing in
    bypass_kernel/ or bypass_engines/ imports from bypass_batch.

Invariants:
    - All timestamps come from the injected Clock.
    - Reminder evaluation is pure (``domain.reminders``).
    - Deadlines are acted on under a store lease, so two scheduler
      instances never expire the same workflow twice.
    - Loops stop between items when their stop signal is set.
"""
