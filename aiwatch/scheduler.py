"""Background maintenance jobs.

- Stale request sweep: every minute, times out requests older than
  STALE_REQUEST_MAX_AGE_MINUTES.
- Rate-limit counter sweep and cache expiry sweep: every
  SWEEP_INTERVAL_MINUTES.

Jobs catch and log their own errors so a failed tick never stops the
scheduler.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from aiwatch.dependencies import MonitoringServices


def stale_request_tick(services: MonitoringServices) -> None:
    try:
        timed_out = services.tracker.cleanup_stale(services.settings.stale_request_max_age_minutes)
        if timed_out:
            logger.info(f"[SCHEDULER] Stale sweep timed out {len(timed_out)} request(s)")
    except Exception as e:
        logger.exception(f"[SCHEDULER] Stale request sweep failed: {e}")


def sweep_tick(services: MonitoringServices) -> None:
    try:
        counters = services.rate_limiter.sweep()
        entries = services.cache.sweep()
        logger.debug(f"[SCHEDULER] Swept {counters} rate-limit counters and {entries} cache entries")
    except Exception as e:
        logger.exception(f"[SCHEDULER] Sweep failed: {e}")


def create_scheduler(services: MonitoringServices) -> BackgroundScheduler:
    """Build (but do not start) the maintenance scheduler."""
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        stale_request_tick,
        trigger=IntervalTrigger(minutes=1),
        args=[services],
        id="stale_request_cleanup",
        name="Stale AI Request Cleanup",
        replace_existing=True,
    )
    scheduler.add_job(
        sweep_tick,
        trigger=IntervalTrigger(minutes=services.settings.sweep_interval_minutes),
        args=[services],
        id="expiry_sweep",
        name="Rate Limit and Cache Expiry Sweep",
        replace_existing=True,
    )
    return scheduler
