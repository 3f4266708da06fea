import os

DEFAULT_CONFIG = {
    "timeout_seconds": "0",       # 0 = jobs may run forever
    "poll_interval": "0.5",
    "max_retries": "3",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

DB_FILE = os.environ.get("JOBQUEUE_DB", "jobqueue.db")

# comma separated modules imported at startup to register jobs
JOB_MODULES = [m.strip() for m in os.environ.get("JOBQUEUE_JOBS", "").split(",") if m.strip()]
