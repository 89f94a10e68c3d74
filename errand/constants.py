"""Tunable constants shared across errand modules."""

APPROVAL_INCREMENT = 0.2
CORRECTION_DECREMENT = 0.3
SKIP_DECREMENT = 0.5
AUTONOMOUS_THRESHOLD = 0.8
MIN_RUNS_FOR_GRADUATION = 5
MAX_RECENT_CORRECTIONS = 0
MIN_CORRECTIONS_FOR_PATTERN = 3

DEFAULT_MORNING_HOUR = 8
DEFAULT_EVENING_HOUR = 17
DEFAULT_WATCH_FOLDER = "~/Downloads"

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0

EXPORT_VERSION = "1.0"

# a run still marked running after this long is treated as abandoned
STALE_RUN_SECONDS = 6 * 60 * 60
