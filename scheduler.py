"""
CurtainPoint Background Scheduler

Runs periodic tasks:
- Release escrow for jobs completed more than ESCROW_RELEASE_HOURS ago
  with no open dispute
- Turn queued domain events into notifications

Only starts when ENABLE_SCHEDULER=true to prevent running on multiple instances.
"""

import logging

logger = logging.getLogger(__name__)


def _settle_due_escrows(app):
    """Settle pending payments whose dispute window has passed."""
    with app.app_context():
        from services import get_escrow_engine

        settled = get_escrow_engine().settle_due()
        if settled:
            logger.info("Scheduler: settled %d payments", settled)
        return settled


def _dispatch_events(app):
    """Deliver queued domain events as notifications."""
    with app.app_context():
        from notifications import dispatch_pending_events

        try:
            return dispatch_pending_events()
        except Exception:
            logger.exception("Scheduler: event dispatch failed")
            return 0


def init_scheduler(app):
    """Initialize and start the background scheduler.

    Only runs if ENABLE_SCHEDULER is set in the app config.
    """
    if not app.config.get("ENABLE_SCHEDULER"):
        logger.info("Scheduler disabled (set ENABLE_SCHEDULER=true to enable)")
        return None

    interval = app.config.get("SCHEDULER_INTERVAL_MINUTES", 15)
    try:
        from apscheduler.schedulers.background import BackgroundScheduler

        scheduler = BackgroundScheduler(daemon=True)

        scheduler.add_job(
            _settle_due_escrows,
            "interval",
            minutes=interval,
            args=[app],
            id="settle_due_escrows",
            name="Release escrow after the dispute window",
            max_instances=1,
            coalesce=True,
        )

        scheduler.add_job(
            _dispatch_events,
            "interval",
            minutes=1,
            args=[app],
            id="dispatch_events",
            name="Dispatch domain events as notifications",
            max_instances=1,
            coalesce=True,
        )

        scheduler.start()
        logger.info("Background scheduler started with 2 jobs (settlement every %d min)", interval)
        return scheduler
    except ImportError:
        logger.warning("APScheduler not installed, scheduler disabled")
        return None
    except Exception:
        logger.exception("Failed to start scheduler")
        return None
