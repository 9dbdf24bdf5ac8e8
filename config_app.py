import os

# Snapshot loaded at startup and written after each registration
SNAPSHOT_PATH = os.environ.get("RINGABELL_SNAPSHOT", "fingerprints/ringabell.rbfp")

# Optional YAML overrides of the pipeline constants (only used for a fresh index)
CONFIG_PATH = os.environ.get("RINGABELL_CONFIG") or None

MAX_UPLOAD_BYTES = int(os.environ.get("RINGABELL_MAX_UPLOAD_BYTES", 50 * 1024 * 1024))

# Uploads longer than this many seconds of processing are cancelled
REQUEST_TIMEOUT_SEC = float(os.environ.get("RINGABELL_TIMEOUT_SEC", 30.0))

LOG_LEVEL = os.environ.get("RINGABELL_LOG_LEVEL", "INFO")
