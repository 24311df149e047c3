import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./venue_ledger.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
SCAN_TOKEN_SECRET = os.environ.get("SCAN_TOKEN_SECRET", "dev_secret_change_me")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Admission
UNDO_WINDOW_SECONDS = float(os.environ.get("UNDO_WINDOW_SECONDS", "8"))

# Redemption
REDEEM_MAX_ATTEMPTS = int(os.environ.get("REDEEM_MAX_ATTEMPTS", "3"))

# Waitlist
NOTIFY_EXPIRY_MINUTES = int(os.environ.get("NOTIFY_EXPIRY_MINUTES", "15"))
TURNOVER_SAMPLE_SIZE = int(os.environ.get("TURNOVER_SAMPLE_SIZE", "20"))
DEFAULT_TURNOVER_MINUTES = float(os.environ.get("DEFAULT_TURNOVER_MINUTES", "15"))
NOTIFY_STREAM = os.environ.get("NOTIFY_STREAM", "waitlist_notifications")
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL", "")

# Request guards (0 disables the limiter)
RESOLVE_RATE_PER_MIN = int(os.environ.get("RESOLVE_RATE_PER_MIN", "30"))
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "300"))
