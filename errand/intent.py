"""Turn a natural-language automation request into an ``Intent``."""

from __future__ import annotations

import logging
import os
import re
from typing import List, Optional

from .constants import DEFAULT_WATCH_FOLDER
from .contracts import (
    Destination,
    EmailTrigger,
    FileWatchTrigger,
    Intent,
    ManualTrigger,
    ScheduleTrigger,
    Source,
)
from .triggers import DAY_NAMES, FOLDERS, TriggerManager, expand_path

logger = logging.getLogger(__name__)

SCHEDULE_RE = re.compile(
    r"\bevery\s+(?:" + "|".join(DAY_NAMES) + r"|day|week|month|morning|evening"
    r"|\d{1,2}(?::\d{2})?\s*(?:am|pm))\b|\b(?:daily|weekly|monthly)\b",
    re.IGNORECASE,
)
FILE_WATCH_RE = re.compile(
    r"\b(?:when|whenever)\s+(?:an?\s+)?(?:new\s+)?(?:\w+\s+)?files?\b", re.IGNORECASE
)
EMAIL_RE = re.compile(
    r"\b(?:when|whenever)\s+(?:i\s+)?(?:get|receive)\s+(?:an?\s+)?email", re.IGNORECASE
)

FOLDER_SOURCE_RE = re.compile(
    r"\b(?:from|in)\s+(?:the\s+|my\s+)?(downloads?|documents?|desktop)\b"
    r"|\b(downloads?|documents?|desktop)\s+folder\b",
    re.IGNORECASE,
)
PATH_SOURCE_RE = re.compile(r"\bfrom\s+(?:the\s+)?([~/][\w/.-]*[\w/])")
PDF_RE = re.compile(r"\b(pdfs?|invoices?|receipts?)\b", re.IGNORECASE)
EXTRACT_RE = re.compile(r"\bextract\s+(.+?)\s+from\b", re.IGNORECASE)
WEB_RE = re.compile(r"\b(?:from|on|in)\s+([\w.-]+\.com)\b", re.IGNORECASE)

FILE_DEST_RE = re.compile(
    r"\b(?:add|append|save|write)\b.+?\b(?:to|into)\s+(?:the\s+|my\s+|a\s+)?([~/]?[\w/.-]+\.\w+)",
    re.IGNORECASE,
)
SHEET_TOKEN_RE = re.compile(r"(?<![\w/.~-])([~/]?[\w/.-]+\.(?:csv|xlsx))\b", re.IGNORECASE)
SPREADSHEET_RE = re.compile(r"\bspreadsheet\b", re.IGNORECASE)
FORM_RE = re.compile(r"\bfill\s+(?:out\s+)?(?:the\s+)?(\S+)\s+form\b", re.IGNORECASE)
APP_FORM_RE = re.compile(r"\b(?:on|in)\s+(workday|salesforce|quickbooks)\b", re.IGNORECASE)

STOP_WORDS = {
    "the", "a", "an", "to", "from", "in", "on", "at", "by", "for", "with",
    "every", "when", "whenever", "and", "my", "into", "then", "each",
}


def _split_fields(text: str) -> List[str]:
    parts = re.split(r"\s*,\s*(?:and\s+)?|\s+and\s+|\s*/\s*", text.strip())
    return [p.strip().lower() for p in parts if p.strip()]


def _slug(word: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", word.lower()).strip("-")


def detect_trigger(text: str):
    if SCHEDULE_RE.search(text):
        return TriggerManager.parse_schedule(text)
    if FILE_WATCH_RE.search(text):
        return TriggerManager.parse_file_watch(text)
    email = EMAIL_RE.search(text)
    if email:
        return TriggerManager.parse_email_trigger(text[email.end():])
    return ManualTrigger()


def detect_sources(text: str, trigger=None) -> List[Source]:
    sources: List[Source] = []

    folder = FOLDER_SOURCE_RE.search(text)
    if folder:
        hint = (folder.group(1) or folder.group(2)).lower()
        sources.append(
            Source(type="local_files", hint=hint, path=expand_path(FOLDERS[hint]))
        )
    path = PATH_SOURCE_RE.search(text)
    if path:
        sources.append(
            Source(type="local_files", hint=path.group(1), path=expand_path(path.group(1)))
        )

    if PDF_RE.search(text):
        if not sources:
            default = (
                trigger.path
                if isinstance(trigger, FileWatchTrigger)
                else expand_path(DEFAULT_WATCH_FOLDER)
            )
            sources.append(
                Source(type="local_files", hint=os.path.basename(default).lower(), path=default)
            )
        extract = EXTRACT_RE.search(text)
        fields = _split_fields(extract.group(1)) if extract else []
        sources.append(Source(type="pdf", hint="pdf", fields=fields))

    for host in WEB_RE.findall(text):
        sources.append(Source(type="web", hint=host.lower()))
    return sources


def detect_destinations(text: str) -> List[Destination]:
    destinations: List[Destination] = []
    seen = set()

    def add(dest: Destination) -> None:
        key = (dest.type, dest.path, dest.selector)
        if key not in seen:
            seen.add(key)
            destinations.append(dest)

    match = FILE_DEST_RE.search(text)
    if match:
        add(Destination(type="file", path=expand_path(match.group(1))))
    for token in SHEET_TOKEN_RE.findall(text):
        add(Destination(type="file", path=expand_path(token)))
    form = FORM_RE.search(text)
    if form:
        add(Destination(type="web_form", selector=form.group(1).lower()))
    app = APP_FORM_RE.search(text)
    if app:
        add(Destination(type="web_form", selector=app.group(1).lower()))
    return destinations


def _trigger_keyword(trigger) -> Optional[str]:
    if isinstance(trigger, ScheduleTrigger):
        if trigger.frequency == "weekly" and trigger.day_of_week is not None:
            return DAY_NAMES[trigger.day_of_week]
        return trigger.frequency
    if isinstance(trigger, FileWatchTrigger):
        return "new-file"
    if isinstance(trigger, EmailTrigger):
        return "email"
    return None


def generate_name(
    text: str, trigger, sources: List[Source], destinations: List[Destination]
) -> str:
    """Derive a short hyphenated name from the most salient parts of a request."""
    tokens: List[str] = []
    keyword = _trigger_keyword(trigger)
    if keyword:
        tokens.append(keyword)

    pdf = PDF_RE.search(text)
    if pdf:
        tokens.append(pdf.group(1).lower())
    tokens.extend(s.hint.split(".")[0] for s in sources if s.type == "web" and s.hint)
    for dest in destinations:
        if dest.type == "file" and dest.path:
            tokens.append(os.path.splitext(os.path.basename(dest.path))[0])
        elif dest.selector:
            tokens.append(dest.selector)
    if len(tokens) <= 1:
        tokens.extend(
            os.path.basename(s.hint) for s in sources if s.type == "local_files" and s.hint
        )

    slugs = []
    for token in tokens:
        slug = _slug(token)
        if slug and slug not in slugs:
            slugs.append(slug)
    if len(slugs) <= 1:
        words = re.sub(r"[^\w\s]", " ", text.lower()).split()
        for word in words:
            if word in STOP_WORDS or len(word) < 3 or word in slugs:
                continue
            slugs.append(word)
            if len(slugs) >= 4:
                break
    return "-".join(slugs[:4]) or "workflow"


def parse(text: str) -> Intent:
    """Parse a request into an ``Intent``. Unrecognised fragments are dropped."""
    text = text or ""
    trigger = detect_trigger(text)
    sources = detect_sources(text, trigger)
    destinations = detect_destinations(text)
    if SPREADSHEET_RE.search(text) and not any(d.type == "file" for d in destinations):
        destinations.append(
            Destination(type="file", path=expand_path("~/Documents/spreadsheet.csv"))
        )
    name = generate_name(text, trigger, sources, destinations)
    logger.debug(
        f"Parsed intent {name}: trigger={trigger.type} sources={len(sources)} "
        f"destinations={len(destinations)}"
    )
    return Intent(
        name=name,
        description=text.strip(),
        trigger=trigger,
        sources=sources,
        destinations=destinations,
    )
