# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real keys or tokens. Use .env (local, gitignored); .env.example lists every key.

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "ITODO_APP_NAME": "App display name (default: itodo-sync).",
    "ITODO_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Paths (gitignored)
    "ITODO_DATA_DIR": "Local data directory (default: .local/itodo).",
    "ITODO_DB_PATH": "SQLite file holding tasks, lists, queue and watermarks (default: <data_dir>/itodo.sqlite3).",
    # Remote backend (Supabase/PostgREST)
    "ITODO_REMOTE_URL": "Project URL; SUPABASE_URL is accepted too. Empty => offline-only mode.",
    "ITODO_REMOTE_API_KEY": "Anon API key; SUPABASE_ANON_KEY is accepted too.",
    "ITODO_REMOTE_TIMEOUT_SECONDS": "HTTP transport timeout (default: 15).",
    "ITODO_REMOTE_CALL_TIMEOUT_SECONDS": (
        "Deadline per remote call during push/pull (default: 30, never below the transport timeout)."
    ),
    # Push path
    "ITODO_MAX_RETRIES": "Attempts per queue item for NETWORK/SERVER errors (default: 3).",
    "ITODO_DRAIN_ITEM_DELAY_SECONDS": "Pause between queue items within one drain (default: 0).",
    "ITODO_RETRY_BACKOFF_SECONDS": "Base delay of the follow-up drain after retryable failures (default: 5).",
    # Connectivity
    "ITODO_START_ONLINE": "Assume online at startup when a remote is configured (true/false, default: true).",
    "ITODO_NETWORK_PROBE_INTERVAL_SECONDS": "How often the remote is pinged (default: 30).",
    # Session (CLI convenience)
    "ITODO_USER_ID": "Sign in as this user at startup (optional).",
    "ITODO_ACCESS_TOKEN": "Bearer token for that user (optional; the anon key is used otherwise).",
}
