"""Application settings."""
import os
from pathlib import Path

# Database file lives at repo root unless DATABASE_URL says otherwise
REPO_ROOT = Path(__file__).resolve().parent.parent.parent
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{REPO_ROOT / 'forms.db'}")

# Seconds a SQLite writer waits for another writer's lock
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

# Maximum completed responses per form (lifetime). Every paid plan shares it.
RESPONSES_PER_FORM_LIMIT = int(os.getenv("RESPONSES_PER_FORM_LIMIT", "500"))

# Owner access token hashing salt (MUST be changed in production)
ACCESS_TOKEN_SALT = os.getenv("ACCESS_TOKEN_SALT", "dev-access-token-salt-change-in-prod")

# Admin API key for privileged endpoints (must be set in production)
ADMIN_KEY = os.getenv("ADMIN_KEY", "")

# Attempts per view increment before giving up on a storage failure
VIEW_RETRY_ATTEMPTS = int(os.getenv("VIEW_RETRY_ATTEMPTS", "3"))
