"""Default values shared across the engine."""

DEFAULT_MAX_WORKERS = 4
DEFAULT_SLACK_FACTOR = 1.5
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 3600.0
DEFAULT_RETRY_PARK_THRESHOLD_MS = 30_000
DEFAULT_EVALUATION_INTERVAL_SECONDS = 60.0

APPROVAL_TOPIC = "flowgate.approvals"
METRIC_TOPIC_PREFIX = "metric:"
