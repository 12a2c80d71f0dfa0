"""Application configuration loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
DB_PATH = DATA_DIR / "sessions.db"
BROWSER_PROFILE_DIR = DATA_DIR / "browser_profiles"
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", DATA_DIR / "tmp" / "invoices"))
CATEGORY_CATALOGUE_PATH = Path(
    os.getenv("CATEGORY_CATALOGUE_PATH", DATA_DIR / "reimbursement_categories.json")
)

# Session manager
SESSION_MANAGER_HOST = os.getenv("SESSION_MANAGER_HOST", "127.0.0.1")
SESSION_MANAGER_PORT = int(os.getenv("SESSION_MANAGER_PORT", "8025"))
SESSION_MANAGER_URL = f"http://{SESSION_MANAGER_HOST}:{SESSION_MANAGER_PORT}"
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")

# Browser
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "false").lower() == "true"
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "30000"))

# Sessions
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 60 * 60)))
LOGIN_TOKEN_TTL_SECONDS = int(os.getenv("LOGIN_TOKEN_TTL_SECONDS", "900"))
DEFAULT_EMAIL = os.getenv("DEFAULT_EMAIL", "")

# Progress tracking
PROGRESS_TTL_SECONDS = int(os.getenv("PROGRESS_TTL_SECONDS", "300"))  # 5 minutes
PROGRESS_MAX_ENTRIES = int(os.getenv("PROGRESS_MAX_ENTRIES", "1000"))

# Receipt extraction
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", os.getenv("CLAUDE_API_KEY", ""))
EXTRACTION_MODEL = os.getenv("EXTRACTION_MODEL", "claude-sonnet-4-5")
EXTRACTION_MAX_TOKENS = 1024


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    BROWSER_PROFILE_DIR.mkdir(parents=True, exist_ok=True)
    SCRATCH_DIR.mkdir(parents=True, exist_ok=True)
