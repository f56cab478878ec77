"""Alarm triage module - constants and channel names.

Pure constants, no imports from the rest of the application.
"""

# Redis PubSub channels (module only PUBLISHES)
REDIS_CHANNEL_CYCLES = "alarms:cycles"
REDIS_CHANNEL_TRIAGE = "alarms:triage"

# Source unit enumerations -> display strings. Unknown units pass through.
UNIT_DISPLAY_MAP = {
    "degC": "°C",
    "degF": "°F",
    "percent": "%",
}

# Human-readable status labels (history sentences, API)
STATUS_LABELS = {
    "not_handled": "Not handled",
    "handled": "Handled",
    "completed": "Completed",
    "opportunity": "Opportunity",
}

# Statuses that are worth mirroring to the sources even without a comment
MIRROR_RELEVANT_STATUSES = {"handled", "completed", "opportunity"}

# Alarms older than this are counted as "aged" in stats (seconds)
AGED_THRESHOLD = 2 * 60 * 60

# Source descriptor limits
OFFSET_HOURS_LIMIT = 24
PAGE_SIZE_MIN = 1
PAGE_SIZE_MAX = 1000

# Priority range accepted by the filters
PRIORITY_MIN = 0
PRIORITY_MAX = 255
