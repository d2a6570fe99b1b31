"""
Appointment reminder worker - Reminds stylists of upcoming appointments and
prunes old in-app notifications.

Jobs:
    send_reminders (every REMINDER_JOB_INTERVAL_MINUTES): for every open
    appointment starting within the next REMINDER_HOURS_BEFORE hours that has
    no ``reminderSentAt`` yet, dispatch a ``reminder`` to the primary stylist
    and stamp ``reminderSentAt``. Legacy status spellings are matched too.

    cleanup_notifications (every NOTIFICATION_CLEANUP_INTERVAL_HOURS): delete
    notifications older than NOTIFICATION_RETENTION_DAYS.

Architecture:
    - Single event loop; asyncio.sleep() between checks
    - Health check file under HEALTH_CHECK_DIR (one entry per job), replaced atomically
    - Graceful shutdown on SIGTERM/SIGINT
"""

import asyncio
import json
import logging
import signal
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from booking.formatting import now_iso
from booking.services.appointment_service import AppointmentService
from booking.services.status_transitions import RESCHEDULABLE_STATUSES, stored_spellings
from database.connection import get_document_store
from database.document_store import APPOINTMENTS, FieldFilter, FilterOp
from shared.config import get_settings
from shared.logging_config import configure_logging

logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
shutdown_requested = False

REMINDABLE_STATUSES = stored_spellings(RESCHEDULABLE_STATUSES)

HEALTH_FILE_NAME = "reminder_worker_health.json"


def signal_handler(signum: int, frame: Any) -> None:
    """
    Handle SIGTERM/SIGINT for graceful shutdown.
    """
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def appointment_start(date_value: str, time_value: str, tz: ZoneInfo) -> datetime | None:
    """Start of an appointment as an aware datetime, or None if unparseable."""
    try:
        start = datetime.strptime(f"{date_value} {time_value}", "%Y-%m-%d %H:%M")
    except ValueError:
        return None
    return start.replace(tzinfo=tz)


async def send_reminders(
    service: AppointmentService | None = None,
    now: datetime | None = None,
) -> tuple[int, int]:
    """
    Send reminders for appointments entering the reminder window.

    Args:
        service: Appointment service (built from the configured store if omitted)
        now: Current time (defaults to now in TIMEZONE)

    Returns:
        (reminders_sent, errors)
    """
    settings = get_settings()
    tz = ZoneInfo(settings.TIMEZONE)
    service = service or AppointmentService(get_document_store())
    now = now or datetime.now(tz)
    window_end = now + timedelta(hours=settings.REMINDER_HOURS_BEFORE)

    logger.info(f"Starting send_reminders job at {now.isoformat()}")

    docs = await service.store.query(
        APPOINTMENTS, [FieldFilter("status", FilterOp.IN, REMINDABLE_STATUSES)]
    )
    pending = [doc for doc in docs if not doc.data.get("reminderSentAt")]
    appointments = await service.mapper.map_many(pending)

    reminders_sent = 0
    errors = 0

    for appointment in appointments:
        start = appointment_start(appointment.date, appointment.time, tz)
        if start is None or not (now <= start <= window_end):
            continue

        try:
            result = await service.send_reminder(appointment)
            if result is None:
                errors += 1
                continue

            await service.store.update(
                APPOINTMENTS, appointment.id, {"reminderSentAt": now_iso()}
            )
            reminders_sent += 1
            logger.info(
                f"Reminder sent for appointment {appointment.id} "
                f"({appointment.date} {appointment.time})",
                extra={"appointment_id": appointment.id},
            )

        except Exception as e:
            errors += 1
            logger.error(
                f"Error sending reminder for appointment {appointment.id}: {e}",
                extra={"appointment_id": appointment.id},
                exc_info=True,
            )

    logger.info(f"send_reminders completed: {reminders_sent} sent, {errors} errors")

    await update_health_check(
        job_name="send_reminders",
        last_run=now,
        status="healthy" if errors == 0 else "unhealthy",
        processed=reminders_sent,
        errors=errors,
    )
    return reminders_sent, errors


async def cleanup_notifications(
    service: AppointmentService | None = None,
    now: datetime | None = None,
) -> int:
    """
    Delete in-app notifications older than NOTIFICATION_RETENTION_DAYS.

    Args:
        service: Appointment service (built from the configured store if omitted)
        now: Current time (defaults to now in TIMEZONE)

    Returns:
        Number of notifications deleted
    """
    settings = get_settings()
    service = service or AppointmentService(get_document_store())
    now = now or datetime.now(ZoneInfo(settings.TIMEZONE))

    logger.info(f"Starting cleanup_notifications job at {now.isoformat()}")

    try:
        deleted = await service.notification_service.cleanup_old_notifications(
            retention_days=settings.NOTIFICATION_RETENTION_DAYS, now=now
        )
    except Exception as e:
        logger.error(f"Error cleaning up notifications: {e}", exc_info=True)
        await update_health_check(
            job_name="cleanup_notifications",
            last_run=now,
            status="unhealthy",
            processed=0,
            errors=1,
        )
        raise

    await update_health_check(
        job_name="cleanup_notifications",
        last_run=now,
        status="healthy",
        processed=deleted,
        errors=0,
    )
    return deleted


async def update_health_check(
    job_name: str,
    last_run: datetime,
    status: str,
    processed: int,
    errors: int,
) -> None:
    """
    Update health check file with job statistics.

    Args:
        job_name: Name of the job
        last_run: Timestamp of job completion
        status: Health status ('healthy' or 'unhealthy')
        processed: Number of items processed
        errors: Number of errors encountered
    """
    health_dir = Path(get_settings().HEALTH_CHECK_DIR)
    health_dir.mkdir(parents=True, exist_ok=True)
    health_file = health_dir / HEALTH_FILE_NAME
    temp_file = health_dir / f"reminder_worker_health.{int(time.time())}.tmp"

    health_data: dict[str, Any] = {}
    if health_file.exists():
        try:
            health_data = json.loads(health_file.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable health check file: {e}")

    health_data[job_name] = {
        "last_run": last_run.isoformat(),
        "status": status,
        "processed": processed,
        "errors": errors,
    }

    all_healthy = all(
        job.get("status") == "healthy"
        for job in health_data.values()
        if isinstance(job, dict)
    )
    health_data["overall_status"] = "healthy" if all_healthy else "unhealthy"
    health_data["last_updated"] = now_iso()

    try:
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)


# =============================================================================
# Main Entry Point
# =============================================================================

async def async_main() -> None:
    """
    Main async entry point - runs send_reminders and cleanup_notifications
    on their own fixed intervals.

    Handles graceful shutdown on SIGTERM/SIGINT.
    """
    settings = get_settings()
    tz = ZoneInfo(settings.TIMEZONE)
    interval_minutes = settings.REMINDER_JOB_INTERVAL_MINUTES
    cleanup_interval_minutes = settings.NOTIFICATION_CLEANUP_INTERVAL_HOURS * 60

    logger.info(
        f"Reminder worker starting: reminder_hours_before={settings.REMINDER_HOURS_BEFORE}, "
        f"interval={interval_minutes}min, "
        f"notification_retention={settings.NOTIFICATION_RETENTION_DAYS}d "
        f"every {settings.NOTIFICATION_CLEANUP_INTERVAL_HOURS}h, TIMEZONE={tz}"
    )

    await update_health_check(
        job_name="startup",
        last_run=datetime.now(tz),
        status="healthy",
        processed=0,
        errors=0,
    )

    service = AppointmentService(get_document_store())
    last_run: datetime | None = None
    last_cleanup: datetime | None = None

    while not shutdown_requested:
        now = datetime.now(tz)

        if last_run is None or (now - last_run).total_seconds() / 60 >= interval_minutes:
            try:
                await send_reminders(service, now)
            except Exception as e:
                logger.error(f"Error in send_reminders: {e}", exc_info=True)
            last_run = now

        if (
            last_cleanup is None
            or (now - last_cleanup).total_seconds() / 60 >= cleanup_interval_minutes
        ):
            try:
                await cleanup_notifications(service, now)
            except Exception as e:
                logger.error(f"Error in cleanup_notifications: {e}", exc_info=True)
            last_cleanup = now

        await asyncio.sleep(60)

    logger.info("Reminder worker shutting down gracefully...")


def run_reminder_worker() -> None:
    """
    Synchronous entry point that sets up logging and signal handlers,
    then runs the async main function.
    """
    configure_logging()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    asyncio.run(async_main())


if __name__ == "__main__":
    run_reminder_worker()
