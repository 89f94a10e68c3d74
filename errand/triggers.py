"""Trigger parsing, matching and due-workflow selection."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from .constants import (
    DEFAULT_EVENING_HOUR,
    DEFAULT_MORNING_HOUR,
    DEFAULT_WATCH_FOLDER,
    STALE_RUN_SECONDS,
)
from .contracts import (
    EmailEnvelope,
    EmailTrigger,
    FileWatchTrigger,
    ScheduleTrigger,
    parse_trigger,
)
from .persistence.models import RunRecord, TriggerRecord
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

DAY_NAMES = [
    "sunday",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
]

FOLDERS = {
    "download": "~/Downloads",
    "downloads": "~/Downloads",
    "document": "~/Documents",
    "documents": "~/Documents",
    "desktop": "~/Desktop",
}

_DAY_RE = re.compile(r"\b(" + "|".join(DAY_NAMES) + r")s?\b")
_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})\s*(am|pm)?\b")
_MERIDIEM_RE = re.compile(r"\b(\d{1,2})\s*(am|pm)\b")
_AT_HOUR_RE = re.compile(r"\bat\s+(\d{1,2})\b(?!\s*(?:st|nd|rd|th)\b)")
_DAY_OF_MONTH_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)\s+of\b")
_WATCH_PATH_RE = re.compile(r"(?:in|from|to)\s+([~/][\w/.-]+)")
_FOLDER_RE = re.compile(r"\b(downloads?|documents?|desktop)\b", re.IGNORECASE)
_GLOB_RE = re.compile(r"\*\.(\w+)")
_EXT_FILES_RE = re.compile(r"\b(pdf|csv|txt|xlsx?|docx?|png|jpe?g)\s+files?\b", re.IGNORECASE)
_EMAIL_FROM_RE = re.compile(r"\bfrom\s+(?:my\s+|the\s+)?([^\s,]+@[^\s,]+|[^\s,]+)", re.IGNORECASE)
_EMAIL_SUBJECT_RE = re.compile(
    r"\b(?:subject|about)\s+(?:line\s+)?(?:contains?\s+|containing\s+)?"
    r"(?:\"([^\"]+)\"|'([^']+)'|([^,.]+))",
    re.IGNORECASE,
)

TriggerLike = Union[Dict[str, Any], ScheduleTrigger, FileWatchTrigger, EmailTrigger]


def expand_path(path: str) -> str:
    """Expand ``~`` and normalise to an absolute path."""
    return os.path.abspath(os.path.expanduser(path))


def sunday_weekday(moment: datetime) -> int:
    """Day of week with Sunday as 0."""
    return moment.isoweekday() % 7


def _parse_time(desc: str) -> Optional[tuple[int, int]]:
    match = _CLOCK_RE.search(desc)
    if match:
        hour, minute, period = int(match.group(1)), int(match.group(2)), match.group(3)
    else:
        match = _MERIDIEM_RE.search(desc)
        if match:
            hour, minute, period = int(match.group(1)), 0, match.group(2)
        else:
            match = _AT_HOUR_RE.search(desc)
            if not match:
                return None
            hour, minute, period = int(match.group(1)), 0, None
    if period == "pm" and hour < 12:
        hour += 12
    elif period == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def _as_trigger(trigger: TriggerLike):
    if isinstance(trigger, dict):
        return parse_trigger(trigger)
    return trigger


class TriggerManager:
    """Decide which workflows a schedule tick, file event or email should run."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    # ------------------------------------------------------------------
    # Parsing
    @staticmethod
    def parse_schedule(text: str) -> ScheduleTrigger:
        desc = (text or "").lower()
        frequency = "daily"
        day_of_week = None
        day_of_month = None

        day = _DAY_RE.search(desc)
        if day:
            frequency = "weekly"
            day_of_week = DAY_NAMES.index(day.group(1))
        elif re.search(r"\bevery\s+week\b|\bweekly\b", desc):
            frequency = "weekly"
            day_of_week = 1

        nth = _DAY_OF_MONTH_RE.search(desc)
        if nth or re.search(r"\bevery\s+month\b|\bmonthly\b", desc):
            frequency = "monthly"
            day_of_week = None
            day_of_month = int(nth.group(1)) if nth else 1
            if not 1 <= day_of_month <= 31:
                day_of_month = 1

        time = _parse_time(_DAY_OF_MONTH_RE.sub(" ", desc))
        if time:
            hour, minute = time
        elif "evening" in desc:
            hour, minute = DEFAULT_EVENING_HOUR, 0
        else:
            hour, minute = DEFAULT_MORNING_HOUR, 0

        return ScheduleTrigger(
            frequency=frequency,
            hour=hour,
            minute=minute,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
        )

    @staticmethod
    def parse_file_watch(text: str) -> FileWatchTrigger:
        desc = text or ""
        path = None
        match = _WATCH_PATH_RE.search(desc)
        if match:
            path = match.group(1)
        else:
            folder = _FOLDER_RE.search(desc)
            if folder:
                path = FOLDERS[folder.group(1).lower()]

        pattern = None
        glob = _GLOB_RE.search(desc)
        if glob:
            pattern = f"*.{glob.group(1).lower()}"
        else:
            ext = _EXT_FILES_RE.search(desc)
            if ext:
                pattern = f"*.{ext.group(1).lower()}"

        return FileWatchTrigger(
            path=expand_path(path or DEFAULT_WATCH_FOLDER), pattern=pattern
        )

    @staticmethod
    def parse_email_trigger(text: str) -> EmailTrigger:
        desc = text or ""
        from_pattern = None
        subject_pattern = None

        sender = _EMAIL_FROM_RE.search(desc)
        if sender:
            from_pattern = sender.group(1).strip("\"'")
        subject = _EMAIL_SUBJECT_RE.search(desc)
        if subject:
            value = next(g for g in subject.groups() if g is not None).strip()
            subject_pattern = value or None

        return EmailTrigger(from_pattern=from_pattern, subject_pattern=subject_pattern)

    # ------------------------------------------------------------------
    # Matching
    @staticmethod
    def schedule_matches(trigger: TriggerLike, now: datetime) -> bool:
        trigger = _as_trigger(trigger)
        if not isinstance(trigger, ScheduleTrigger):
            return False
        if now.hour != trigger.hour:
            return False
        if trigger.minute is not None and now.minute != trigger.minute:
            return False
        if trigger.frequency == "weekly":
            return trigger.day_of_week is not None and (
                sunday_weekday(now) == trigger.day_of_week
            )
        if trigger.frequency == "monthly":
            return trigger.day_of_month is not None and now.day == trigger.day_of_month
        return True

    @staticmethod
    def file_matches(trigger: TriggerLike, path: str) -> bool:
        trigger = _as_trigger(trigger)
        if not isinstance(trigger, FileWatchTrigger):
            return False
        watch_dir = expand_path(trigger.path)
        file_path = expand_path(path)
        if file_path == watch_dir:
            return False
        if os.path.commonpath([watch_dir, file_path]) != watch_dir:
            return False
        if not trigger.pattern:
            return True
        return fnmatch.fnmatch(
            os.path.basename(file_path).lower(), trigger.pattern.lower()
        )

    @staticmethod
    def email_matches(
        trigger: TriggerLike, email: Union[EmailEnvelope, Dict[str, Any]]
    ) -> bool:
        trigger = _as_trigger(trigger)
        if not isinstance(trigger, EmailTrigger):
            return False
        if isinstance(email, dict):
            email = EmailEnvelope(
                sender=email.get("sender") or email.get("from") or "",
                subject=email.get("subject") or "",
            )
        if trigger.from_pattern:
            wanted = trigger.from_pattern.lower()
            sender = email.sender.lower()
            if sender != wanted and wanted not in sender:
                return False
        if trigger.subject_pattern:
            if trigger.subject_pattern.lower() not in email.subject.lower():
                return False
        return True

    # ------------------------------------------------------------------
    # Workflow selection
    async def _enabled_workflows(self, trigger_type: str):
        return [
            wf
            for wf in await self.repository.list_workflows()
            if wf.enabled and wf.trigger_type == trigger_type
        ]

    @staticmethod
    def is_stale(run: RunRecord, now: datetime) -> bool:
        """A ``running`` run older than the stale window was abandoned."""
        started = run.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        age = now.astimezone(timezone.utc) - started
        return age > timedelta(seconds=STALE_RUN_SECONDS)

    async def get_due_workflows(self, now: Optional[datetime] = None) -> List[str]:
        """Ids of enabled schedule workflows due at ``now`` with no run in flight."""
        now = now or datetime.now()
        due = []
        for wf in await self._enabled_workflows("schedule"):
            if not self.schedule_matches(wf.trigger, now):
                continue
            running = await self.repository.list_runs(wf.id, status="running", limit=1)
            if running and not self.is_stale(running[0], now):
                logger.info(f"Skipping {wf.name}: previous run still in flight")
                continue
            if running:
                logger.warning(
                    f"Run {running[0].id} of {wf.name} looks abandoned, scheduling anyway"
                )
            due.append(wf.id)
        return due

    async def get_file_triggered_workflows(self, path: str) -> List[str]:
        return [
            wf.id
            for wf in await self._enabled_workflows("file_watch")
            if self.file_matches(wf.trigger, path)
        ]

    async def get_email_triggered_workflows(
        self, email: Union[EmailEnvelope, Dict[str, Any]]
    ) -> List[str]:
        return [
            wf.id
            for wf in await self._enabled_workflows("email_match")
            if self.email_matches(wf.trigger, email)
        ]

    # ------------------------------------------------------------------
    # Audit trail
    async def record_trigger(
        self, workflow_id: str, trigger_type: str, context: Optional[dict] = None
    ) -> TriggerRecord:
        logger.debug(f"Trigger {trigger_type} fired for workflow {workflow_id}")
        return await self.repository.record_trigger(workflow_id, trigger_type, context)

    async def get_trigger_history(
        self, workflow_id: str, limit: Optional[int] = None
    ) -> List[TriggerRecord]:
        return await self.repository.list_triggers(workflow_id, limit)
