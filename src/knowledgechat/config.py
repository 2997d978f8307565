# /knowledgechat/config.py
"""
Centralized configuration for the knowledge chat service.
Includes model names, storage paths, retrieval limits and LLM toggles.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def get_api_key() -> str:
    """Read at call time so a key added to the environment is picked up without restart."""
    return str(os.getenv("GROQ_API_KEY", "") or "").strip()


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- LLM Toggles ---
USE_API_LLM = _env_bool("USE_API_LLM", True)              # True for hosted Groq API, False for local Ollama
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "llama-3.1-8b-instant")
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "granite3.3:2b")
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.2, minimum=0.0)
LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 1200, minimum=64)
LLM_TIMEOUT_S = _env_float("LLM_TIMEOUT_S", 60.0, minimum=1.0)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/knowledgechat/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))

DB_PATH = Path(os.getenv("DB_PATH", str(_DATA_DIR / "knowledge.sqlite")))
BLOB_DIR = Path(os.getenv("BLOB_DIR", str(_DATA_DIR / "blobs")))
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(_DATA_DIR / "runtime_cache")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(CACHE_DIR / "metrics")))

# --- Ingestion Limits ---
ANALYSIS_MAX_INPUT_CHARS = _env_int("ANALYSIS_MAX_INPUT_CHARS", 22000, minimum=1000)
FALLBACK_SUMMARY_CHARS = _env_int("FALLBACK_SUMMARY_CHARS", 180, minimum=20)
MAX_PRICING_PLANS = _env_int("MAX_PRICING_PLANS", 8, minimum=1)
URL_MAX_TEXT_CHARS = _env_int("URL_MAX_TEXT_CHARS", 50000, minimum=1000)
URL_TITLE_MAX_CHARS = _env_int("URL_TITLE_MAX_CHARS", 120, minimum=10)
URL_FETCH_TIMEOUT_S = _env_float("URL_FETCH_TIMEOUT_S", 20.0, minimum=1.0)
URL_FETCH_USER_AGENT = os.getenv("URL_FETCH_USER_AGENT", "knowledgechat-url-fetcher/1.0")
BLOB_CHUNK_SIZE = _env_int("BLOB_CHUNK_SIZE", 256 * 1024, minimum=1024)

# --- Knowledge Listing Limits ---
PERSONAL_SOURCE_LIMIT = _env_int("PERSONAL_SOURCE_LIMIT", 20, minimum=1)
TEAM_SOURCE_LIMIT = _env_int("TEAM_SOURCE_LIMIT", 50, minimum=1)
TEAM_LIST_LIMIT = _env_int("TEAM_LIST_LIMIT", 30, minimum=1)
MEMBER_LIST_LIMIT = _env_int("MEMBER_LIST_LIMIT", 50, minimum=1)

# --- Answer Context Limits ---
CHAT_MAX_SOURCES = _env_int("CHAT_MAX_SOURCES", 5, minimum=1)
CHAT_SUMMARY_CHARS = _env_int("CHAT_SUMMARY_CHARS", 350, minimum=50)
CHAT_TEXT_CHARS = _env_int("CHAT_TEXT_CHARS", 1800, minimum=200)
SNIPPET_CHARS_BEFORE = _env_int("SNIPPET_CHARS_BEFORE", 80, minimum=0)
SNIPPET_CHARS_AFTER = _env_int("SNIPPET_CHARS_AFTER", 220, minimum=20)

# --- Organization ---
DEFAULT_SEAT_LIMIT = _env_int("DEFAULT_SEAT_LIMIT", 10, minimum=1)

# --- Create necessary directories ---
_DATA_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
BLOB_DIR.mkdir(parents=True, exist_ok=True)
CACHE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
