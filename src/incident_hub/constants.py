"""
Default values shared by configuration and the notification pipeline.
"""

# HTTP server
DEFAULT_PORT = 8080
DEFAULT_SYSTEM_NAME = "Incident Hub"
DEFAULT_SYSTEM_URL = "http://localhost:8080"

# Outbound delivery
DEFAULT_HTTP_TIMEOUT_SECONDS = 10
DEFAULT_CHAT_API_URL = "https://slack.com/api/chat.postMessage"
DEFAULT_BOT_API_URL = "https://api.telegram.org"
DEFAULT_SMTP_PORT = 587
DEFAULT_EMAIL_RECIPIENT = "alerts@example.com"

# Retry policy
DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 2.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0
DEFAULT_RETRY_MULTIPLIER = 2.0

# Batching
DEFAULT_BATCH_MAX_SIZE = 10
DEFAULT_BATCH_TIMEOUT_SECONDS = 300
DEFAULT_BATCH_SWEEP_INTERVAL_SECONDS = 60
DIGEST_MAX_ENTRIES = 10

# Scheduling
DEFAULT_SCHEDULER_INTERVAL_SECONDS = 30
MAX_RECURRING_OCCURRENCES = 1000

# Webhook intake
DEFAULT_WEBHOOK_MAX_BODY_BYTES = 1024 * 1024
DEFAULT_WEBHOOK_RATE_LIMIT_PER_MINUTE = 120
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 3600

# Storage
VALID_STORAGE_BACKENDS = ("memory", "sqlite")
DEFAULT_SQLITE_PATH = "incident_hub.db"

# Correlation
GROUPING_LABELS = ("service", "instance", "alertname")
FALLBACK_INCIDENT_TITLE = "Alert Incident"
