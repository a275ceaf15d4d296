# Shared configuration for the portal frontend

import os
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent                     # portal/
for _env_path in [BASE_DIR / ".env", BASE_DIR.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------
API_BASE_URL        = os.getenv("API_BASE_URL", "https://citizen-grivance-system.onrender.com").rstrip("/")
API_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", "15"))

# ---------------------------------------------------------------------------
# Session cookie
# ---------------------------------------------------------------------------
SESSION_SECRET = os.getenv("SESSION_SECRET", "")
if not SESSION_SECRET or len(SESSION_SECRET) < 32:
    raise RuntimeError(
        "FATAL: SESSION_SECRET must be set in the environment and be at least 32 characters. "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
    )
SESSION_ALGORITHM     = "HS256"
SESSION_COOKIE_NAME   = os.getenv("SESSION_COOKIE_NAME", "portal_session")
SESSION_MAX_AGE_HOURS = int(os.getenv("SESSION_MAX_AGE_HOURS", "8"))
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
LOGIN_RATE_LIMIT = os.getenv("LOGIN_RATE_LIMIT", "5/minute")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

# ---------------------------------------------------------------------------
# Upload limits
# ---------------------------------------------------------------------------
MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024
CITIZEN_ATTACHMENT_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}
EVIDENCE_EXTENSIONS = {".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png", ".gif", ".webp"}
