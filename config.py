import os
from typing import List


def normalize_cors_origins(origins_str: str) -> List[str]:
    """
    Normalize a comma-separated string of CORS origins.

    Handles:
    - Trim whitespace from each origin
    - Remove surrounding quotes (" and ')
    - Remove trailing slashes (/)
    - Filter out empty entries

    Args:
        origins_str: Comma-separated string of origins

    Returns:
        List of normalized, non-empty origins
    """
    if not origins_str:
        return []

    normalized = []
    for origin in origins_str.split(","):
        origin = origin.strip()

        if (origin.startswith('"') and origin.endswith('"')) or \
           (origin.startswith("'") and origin.endswith("'")):
            origin = origin[1:-1]

        origin = origin.strip().rstrip("/")

        if origin:
            normalized.append(origin)

    return normalized


class Config:
    # --- DATABASE ---
    DATABASE_URL = os.getenv("DATABASE_URL")
    CREATE_TABLES_ON_STARTUP = os.getenv("CREATE_TABLES_ON_STARTUP", "true").lower() == "true"

    # --- GOOGLE AUTH & DRIVE ---
    GOOGLE_SERVICE_ACCOUNT_JSON = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON")
    # Workspace user the service account impersonates (domain-wide delegation)
    GOOGLE_IMPERSONATE_EMAIL = os.getenv("GOOGLE_IMPERSONATE_EMAIL", None)
    USE_MOCK_DRIVE = os.getenv("USE_MOCK_DRIVE", "false").lower() == "true"
    MOCK_DRIVE_FILE = os.getenv("MOCK_DRIVE_FILE", None)
    # Default sync scope. Empty means the whole catalog visible to the account.
    DRIVE_ROOT_FOLDER_ID = os.getenv("DRIVE_ROOT_FOLDER_ID", None)

    # --- SYNC ENGINE ---
    SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "10"))
    SYNC_PAGE_SIZE = int(os.getenv("SYNC_PAGE_SIZE", "100"))
    SYNC_PAGE_MAX_RETRIES = int(os.getenv("SYNC_PAGE_MAX_RETRIES", "5"))
    SYNC_HEARTBEAT_SECONDS = float(os.getenv("SYNC_HEARTBEAT_SECONDS", "30"))
    SYNC_SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SYNC_SUBSCRIBER_QUEUE_SIZE", "1000"))
    # Expiry of a cross-process run lock; an active run renews it every third of the TTL,
    # so a crashed worker blocks its scope for at most this long
    SYNC_LOCK_TTL_SECONDS = int(os.getenv("SYNC_LOCK_TTL_SECONDS", "300"))

    # --- SCHEDULER ---
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "false").lower() == "true"
    SYNC_INTERVAL_MINUTES = int(os.getenv("SYNC_INTERVAL_MINUTES", "60"))

    # --- REDIS ---
    REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
    REDIS_CACHE_ENABLED = os.getenv("REDIS_CACHE_ENABLED", "false").lower() == "true"

    # --- CORS ---
    _DEFAULT_CORS_ORIGINS = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", ",".join(_DEFAULT_CORS_ORIGINS))
    # Optional regex for additional origins (e.g. preview deployments)
    CORS_ORIGIN_REGEX = os.getenv("CORS_ORIGIN_REGEX", None)

config = Config()
