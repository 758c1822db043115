"""Trigger computation and recurring-trigger registration for archival jobs."""

import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from archival.exceptions import ConfigurationError
from utils.logging import get_logger

if TYPE_CHECKING:
    from archival.models import ArchivalJob

# Standard cron numbers Sunday as 0 (or 7); APScheduler numbers Monday as 0.
_DAY_NAMES = {
    "0": "sun",
    "1": "mon",
    "2": "tue",
    "3": "wed",
    "4": "thu",
    "5": "fri",
    "6": "sat",
    "7": "sun",
}


def cron_for_interval(interval_minutes: int) -> str:
    """Map a run interval onto the cron expression used to trigger it.

    Args:
        interval_minutes: Interval between runs in minutes

    Returns:
        Five-field cron expression

    Raises:
        ConfigurationError: If the interval is not positive
    """
    if interval_minutes <= 0:
        raise ConfigurationError(
            "Interval must be a positive number of minutes",
            context={"interval_minutes": interval_minutes},
        )
    if interval_minutes == 1:
        return "* * * * *"
    if interval_minutes < 60:
        return f"*/{interval_minutes} * * * *"
    if interval_minutes == 60:
        return "0 * * * *"
    if interval_minutes < 1440:
        return f"0 */{interval_minutes // 60} * * *"
    return "0 0 * * *"


def _day_name(number: str) -> str:
    return _DAY_NAMES.get(number, number)


def _translate_day_item(item: str) -> str:
    """Translate one comma-separated day-of-week item.

    Cron ranges run Sunday to Saturday while APScheduler ranges run Monday to
    Sunday, so Sunday is split off: ``0-4`` becomes ``sun,mon-thu`` and ``5-7``
    becomes ``fri-sat,sun``.
    """
    if "/" in item:
        return re.sub(r"(?<!/)\b\d+\b", lambda m: _day_name(m.group(0)), item)

    first, _, last = item.partition("-")
    if not last:
        return _day_name(first)
    if not (first.isdigit() and last.isdigit()) or int(first) > int(last) or int(last) > 7:
        return f"{_day_name(first)}-{_day_name(last)}"

    start, end = int(first), int(last)
    days: list[str] = []
    if start == 0:
        days.append("sun")
        start = 1
    if start < min(end, 6):
        days.append(f"{_DAY_NAMES[str(start)]}-{_DAY_NAMES[str(min(end, 6))]}")
    elif start == min(end, 6):
        days.append(_DAY_NAMES[str(start)])
    if end == 7 and "sun" not in days:
        days.append("sun")
    return ",".join(days)


def _translate_day_of_week(field: str) -> str:
    return ",".join(_translate_day_item(item) for item in field.split(","))


def build_cron_trigger(expression: str, tz: Any = timezone.utc) -> CronTrigger:
    """Build an APScheduler trigger from a 5-field or 6-field cron expression.

    Six-field expressions carry a leading seconds field.

    Raises:
        ConfigurationError: If the expression cannot be parsed
    """
    fields = (expression or "").split()
    if len(fields) == 5:
        second = "0"
        minute, hour, day, month, day_of_week = fields
    elif len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
    else:
        raise ConfigurationError(
            f"Cron expression must have 5 or 6 fields, got {len(fields)}",
            context={"cron_expression": expression},
        )

    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week),
            timezone=tz,
        )
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid cron expression: {e}",
            context={"cron_expression": expression},
        ) from e


def trigger_expression(job: "ArchivalJob") -> str:
    """Return the cron expression that drives a job (explicit cron wins over interval)."""
    if job.cron_expression:
        return job.cron_expression
    if job.interval_minutes:
        return cron_for_interval(job.interval_minutes)
    raise ConfigurationError("Job has neither an interval nor a cron expression", context={"job": job.name})


def next_run_time(job: "ArchivalJob", now: Optional[datetime] = None) -> datetime:
    """Compute when a job should run next.

    Cron expressions take precedence; otherwise the next run is ``now + interval``.

    Args:
        job: Job whose trigger is evaluated
        now: Reference time (defaults to current UTC time)

    Returns:
        Timezone-aware UTC datetime of the next run
    """
    now = now or datetime.now(timezone.utc)
    if job.cron_expression:
        trigger = build_cron_trigger(job.cron_expression)
        fire_time = trigger.get_next_fire_time(None, now)
        if fire_time is None:
            raise ConfigurationError(
                "Cron expression has no future occurrence",
                context={"cron_expression": job.cron_expression},
            )
        return fire_time.astimezone(timezone.utc)
    if job.interval_minutes:
        return now + timedelta(minutes=job.interval_minutes)
    raise ConfigurationError("Job has neither an interval nor a cron expression", context={"job": job.name})


def trigger_id(job_id: int) -> str:
    """Stable identifier of the recurring trigger registered for a job."""
    return f"archival_job_{job_id}"


class TriggerScheduler:
    """Registers one recurring trigger per enabled job and fires ``JobRunner.execute``.

    APScheduler's ``max_instances=1`` keeps a job from overlapping itself within
    this process; the runner's advisory lock covers multiple processes.
    """

    def __init__(
        self,
        runner: Any,
        repository: Any,
        tz: Any = timezone.utc,
        misfire_grace_seconds: int = 60,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize trigger scheduler.

        Args:
            runner: JobRunner whose ``execute(job_id)`` is invoked
            repository: Job repository used to discover enabled jobs
            tz: Timezone cron expressions are evaluated in
            misfire_grace_seconds: How late a firing may start before it is dropped
            logger: Optional logger instance
        """
        self.runner = runner
        self.repository = repository
        self.tz = tz
        self.misfire_grace_seconds = misfire_grace_seconds
        self.logger = logger or get_logger("trigger_scheduler")
        self.scheduler = AsyncIOScheduler(timezone=tz)

    def register(self, job: "ArchivalJob") -> None:
        """Register (or replace) the recurring trigger for a job."""
        if job.id is None:
            raise ConfigurationError("Cannot schedule a job that has not been persisted", context={"job": job.name})

        expression = trigger_expression(job)
        self.scheduler.add_job(
            self.runner.execute,
            trigger=build_cron_trigger(expression, self.tz),
            args=[job.id],
            id=trigger_id(job.id),
            name=job.name,
            replace_existing=True,
            misfire_grace_time=self.misfire_grace_seconds,
            coalesce=True,
            max_instances=1,
        )
        self.logger.info("Registered job trigger", job_id=job.id, job_name=job.name, cron=expression)

    def unregister(self, job_id: int) -> None:
        """Remove a job's trigger if one is registered."""
        try:
            self.scheduler.remove_job(trigger_id(job_id))
            self.logger.info("Unregistered job trigger", job_id=job_id)
        except JobLookupError:
            self.logger.debug("No trigger registered for job", job_id=job_id)

    async def sync(self) -> int:
        """Register triggers for all enabled jobs and drop triggers of disabled ones.

        Returns:
            Number of registered triggers
        """
        enabled = await self.repository.get_enabled()
        enabled_ids = {trigger_id(job.id) for job in enabled}

        for scheduled in self.scheduler.get_jobs():
            if scheduled.id.startswith("archival_job_") and scheduled.id not in enabled_ids:
                self.scheduler.remove_job(scheduled.id)
                self.logger.info("Dropped trigger of disabled job", trigger=scheduled.id)

        for job in enabled:
            try:
                self.register(job)
            except ConfigurationError as e:
                self.logger.error("Failed to register job trigger", job_id=job.id, error=str(e))

        return len([j for j in self.scheduler.get_jobs() if j.id.startswith("archival_job_")])

    def start(self) -> None:
        """Start firing triggers."""
        self.scheduler.start()
        self.logger.info("Trigger scheduler started", triggers=len(self.scheduler.get_jobs()))

    def shutdown(self) -> None:
        """Stop the scheduler without waiting for in-flight runs."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("Trigger scheduler stopped")
