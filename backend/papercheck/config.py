"""
Configuration - env vars, constants, API key setup.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
import google.generativeai as genai

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

# Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("papercheck")

# Database
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "papercheck")

# Public URL prefix for blobs served by /api/files/{name}
PUBLIC_FILES_BASE_URL = os.environ.get("PUBLIC_FILES_BASE_URL", "http://localhost:8000/api/files").rstrip("/")

# LLM
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")

# Grading function: "local" runs the Gemini grader in-process, "remote" POSTs to GRADING_FUNCTION_URL
GRADING_BACKEND = os.environ.get("GRADING_BACKEND", "local")
GRADING_FUNCTION_URL = os.environ.get("GRADING_FUNCTION_URL", "")
GRADING_TIMEOUT_SECONDS = float(os.environ.get("GRADING_TIMEOUT_SECONDS", "240"))
DOWNLOAD_TIMEOUT_SECONDS = float(os.environ.get("DOWNLOAD_TIMEOUT_SECONDS", "30"))
DOWNLOAD_ATTEMPTS = int(os.environ.get("DOWNLOAD_ATTEMPTS", "3"))
DOWNLOAD_RETRY_BASE_DELAY = float(os.environ.get("DOWNLOAD_RETRY_BASE_DELAY", "1.0"))

# Backoff
EVALUATION_RETRY_BASE_DELAY = float(os.environ.get("EVALUATION_RETRY_BASE_DELAY", "5.0"))
BUNDLE_UPLOAD_BASE_DELAY = float(os.environ.get("BUNDLE_UPLOAD_BASE_DELAY", "2.0"))

# Background grade reconciliation
GRADE_SYNC_INTERVAL_SECONDS = int(os.environ.get("GRADE_SYNC_INTERVAL_SECONDS", "300"))

# Concurrent PDF/image conversions
MAX_CONCURRENT_RASTERIZATIONS = int(os.environ.get("MAX_CONCURRENT_RASTERIZATIONS", "3"))

if not GEMINI_API_KEY:
    logger.warning("⚠️ No GEMINI_API_KEY found - OCR extraction and local grading will fail")
else:
    genai.configure(api_key=GEMINI_API_KEY)


def get_llm_api_key():
    """Get the LLM API key from environment variables."""
    return GEMINI_API_KEY


def get_version_info():
    """Get deployment version information."""
    git_commit = os.environ.get("GIT_COMMIT_SHA")
    if not git_commit:
        try:
            if os.path.exists(".git_commit"):
                with open(".git_commit", "r") as f:
                    git_commit = f.read().strip()
        except OSError:
            pass

    if not git_commit:
        git_commit = "unknown"

    return {
        "git_commit": git_commit,
        "build_time": os.environ.get("BUILD_TIME", "unknown"),
        "environment": os.environ.get("ENV", os.environ.get("ENVIRONMENT", "development")),
        "grading_backend": GRADING_BACKEND,
    }
