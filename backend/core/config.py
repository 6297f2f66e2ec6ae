"""
Core configuration and constants for the StreamFreely backend.
"""
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Token signing
DEFAULT_STREAM_SECRET = "default-secret-change-me"
STREAM_SECRET = os.environ.get("STREAM_SECRET", DEFAULT_STREAM_SECRET)
TOKEN_TTL_SECONDS = int(os.environ.get("TOKEN_TTL_SECONDS", str(24 * 60 * 60)))  # 24 hours
SIGNATURE_BYTES = 12  # 16 chars once base64url encoded

# Public URL used to build stream links (derived from the request when empty)
BASE_URL = os.environ.get("BASE_URL", "").rstrip("/")

# Allowed origins for CORS (comma-separated)
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "").split(",") if os.environ.get("ALLOWED_ORIGINS") else ["*"]

# Upstream requests
UPSTREAM_TIMEOUT_SECONDS = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "30"))
UPSTREAM_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
STREAM_CHUNK_SIZE = int(os.environ.get("STREAM_CHUNK_SIZE", str(64 * 1024)))
MAX_MANIFEST_BYTES = int(os.environ.get("MAX_MANIFEST_BYTES", str(5 * 1024 * 1024)))  # 5 MB
BLOCK_PRIVATE_NETWORKS = _env_bool("BLOCK_PRIVATE_NETWORKS", True)
STREAM_CACHE_CONTROL = os.environ.get("STREAM_CACHE_CONTROL", "public, max-age=3600")

# Cloud storage (Google Drive v3)
GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY", "")
DRIVE_API_BASE = os.environ.get("DRIVE_API_BASE", "https://www.googleapis.com/drive/v3")

# In-memory caches
METADATA_CACHE_TTL_SECONDS = int(os.environ.get("METADATA_CACHE_TTL_SECONDS", "300"))  # 5 minutes
CACHE_SWEEP_THRESHOLD = int(os.environ.get("CACHE_SWEEP_THRESHOLD", "100"))
CACHE_SWEEP_INTERVAL_SECONDS = int(os.environ.get("CACHE_SWEEP_INTERVAL_SECONDS", "120"))
