"""Constants used throughout the fee insights application."""

# Stellar fees
DEFAULT_BASE_FEE_STROOPS = 100  # Network minimum base fee per operation

# Horizon API defaults
DEFAULT_HORIZON_URL = "https://horizon.stellar.org"
DEFAULT_HORIZON_BATCH_SIZE = 200  # Horizon's maximum page size
HORIZON_RATE_LIMIT_PER_MINUTE = 60  # Public Horizon allows 3600 requests/hour
HORIZON_DATA_FRESHNESS_SECS = 6  # Roughly one ledger close
DEFAULT_HORIZON_MAX_PAGES = 5  # Pages drained per fetch before deferring the backlog

# Default configuration values
DEFAULT_POLL_SECS = 10
DEFAULT_WINDOW_MAX_POINTS = 1000
DEFAULT_WINDOW_MAX_AGE_SECS = 3600
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_SHUTDOWN_GRACE_SECS = 30
DEFAULT_SNAPSHOT_POLICY = "always"

# Congestion detection defaults
DEFAULT_CONGESTION_AVG_MULTIPLIER = "2.0"
DEFAULT_HYSTERESIS_MARGIN = "0.2"
DEFAULT_ENTER_CYCLES = 1

# Alerts
DEFAULT_ALERT_MIN_CHANGE_SECS = 300

# Log rotation defaults
DEFAULT_LOG_MAX_BYTES = 10_485_760  # 10MB
DEFAULT_LOG_BACKUP_COUNT = 30

# Network timeouts
DEFAULT_HTTP_TIMEOUT_SECS = 10

# Storage defaults
DEFAULT_DB_PATH = "state/fee_insights.db"
DEFAULT_JSONL_DIR = "state/records"
RAW_POINTS_FILENAME = "fee_data_points.jsonl"
SNAPSHOTS_FILENAME = "fee_snapshots.jsonl"
