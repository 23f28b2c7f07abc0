import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


# Storage mode: local / dropbox / gcp / azure
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

LOCAL_STORE_DIR = Path(os.getenv("LOCAL_STORE_DIR", str(BASE_DIR / "data" / "store")))

GCS_BUCKET = os.getenv("GCS_BUCKET")
AZURE_CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
AZURE_CONTAINER = os.getenv("AZURE_CONTAINER")
DROPBOX_TOKEN = os.getenv("DROPBOX_TOKEN")

# Logical folders inside the store
ORIGINALS_FOLDER = os.getenv("ORIGINALS_FOLDER", "/booth_uploads")
OUTPUTS_FOLDER = os.getenv("OUTPUTS_FOLDER", "/booth_outputs")
FAILED_FOLDER = os.getenv("FAILED_FOLDER", "/booth_failed")

# Image generation
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
STYLE_REF_DIR = Path(os.getenv("STYLE_REF_DIR", str(BASE_DIR / "assets" / "styles")))
MAX_INPUT_SIDE = _int_env("MAX_INPUT_SIDE", 1024)

# Queue throttling: one upstream call at a time, fixed pause between calls
TRANSFORM_DELAY_SECONDS = _float_env("TRANSFORM_DELAY_SECONDS", 1.5)
TRANSFORM_TIMEOUT_SECONDS = _float_env("TRANSFORM_TIMEOUT_SECONDS", 120.0)
# HTTP timeout of a single image request, kept under the queue timeout
IMAGE_API_TIMEOUT_SECONDS = _float_env("IMAGE_API_TIMEOUT_SECONDS", TRANSFORM_TIMEOUT_SECONDS * 0.9)
JOB_TABLE_MAX = _int_env("JOB_TABLE_MAX", 500)
JOB_RETENTION_SECONDS = _float_env("JOB_RETENTION_SECONDS", 3600.0)

# Booth wall clock (KST by default), independent of the host timezone
CLOCK_UTC_OFFSET_HOURS = _float_env("CLOCK_UTC_OFFSET_HOURS", 9.0)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = _int_env("PORT", 3000)
