import os
from pathlib import Path
from typing import Optional


def _parse_int_default(default: int, *names: str) -> int:
    for name in names:
        raw = os.environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            return int(raw)
        except ValueError:
            continue
    return default


def _parse_float_default(default: float, *names: str) -> float:
    for name in names:
        raw = os.environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            return float(raw)
        except ValueError:
            continue
    return default


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


_DATA_DIR = Path(__file__).resolve().parent.parent / "data"

DB_PATH = os.environ.get("DB_PATH", str(_DATA_DIR / "orchestrator.sqlite"))
AUDIT_LOG_PATH = os.environ.get("AUDIT_LOG_PATH", str(_DATA_DIR / "audit.log"))

# llm talks to an Ollama-compatible chat endpoint, heuristic uses keyword rules only.
CLASSIFIER_MODE = (os.environ.get("CLASSIFIER_MODE") or "llm").lower()
OLLAMA_HOST = os.environ.get("OLLAMA_HOST", "http://127.0.0.1:11434")
OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "llama3.1:8b")
TEMP = _parse_float_default(0.3, "MODEL_TEMP", "TEMP")
MAX_TOKENS = _parse_int_default(2000, "MODEL_MAX_TOKENS", "MAX_TOKENS")
CLASSIFIER_TIMEOUT_SECONDS = _parse_float_default(30.0, "CLASSIFIER_TIMEOUT_SECONDS", "OLLAMA_TIMEOUT")
CLASSIFIER_MAX_RETRIES = _parse_int_default(2, "CLASSIFIER_MAX_RETRIES")

REQUIRE_API_KEY = (os.environ.get("REQUIRE_API_KEY") or "false").lower() == "true"
INGEST_API_KEY: Optional[str] = _require_env("INGEST_API_KEY") if REQUIRE_API_KEY else os.environ.get("INGEST_API_KEY")
DEFAULT_ORG_ID: Optional[str] = os.environ.get("DEFAULT_ORG_ID")

RATE_LIMIT_BACKEND = (os.environ.get("RATE_LIMIT_BACKEND") or "memory").lower()
CONFLICT_BUFFER_MINUTES = _parse_int_default(0, "CONFLICT_BUFFER_MINUTES")
SLOT_STEP_MINUTES = _parse_int_default(30, "SLOT_STEP_MINUTES")

NOTIFY_WEBHOOK_URL: Optional[str] = os.environ.get("NOTIFY_WEBHOOK_URL")
AUTOMATION_WEBHOOK_URL: Optional[str] = os.environ.get("AUTOMATION_WEBHOOK_URL")
COLLABORATOR_TIMEOUT = _parse_float_default(10.0, "COLLABORATOR_TIMEOUT")

WORKER_CONCURRENCY = _parse_int_default(4, "WORKER_CONCURRENCY")
SCHEDULE_TICK_MINUTES = _parse_int_default(15, "SCHEDULE_TICK_MINUTES")
SCHEDULE_ORG_ID: Optional[str] = os.environ.get("SCHEDULE_ORG_ID")
FALLBACK_PIPELINE_ID: Optional[str] = os.environ.get("FALLBACK_PIPELINE_ID")
