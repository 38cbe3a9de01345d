import os
from pathlib import Path

from dotenv import load_dotenv

# Absolute paths
ROOT_DIR = Path(__file__).resolve().parent.parent

# Load environment variables early so defaults below can be overridden by a local `.env`.
# In managed platforms (Cloud Run/Render/Netlify), variables are injected directly and this is a no-op.
load_dotenv()

PORT = int(os.getenv("PORT", "8080"))
BASE_URL = os.getenv("BASE_URL", f"http://localhost:{PORT}")

# ── State backend ────────────────────────────────────────────────
# memory: per-process maps (lost on restart), redis: shared hashes, db: SQLite/Postgres kv table
STATE_BACKEND = (os.getenv("STATE_BACKEND", "memory") or "memory").strip().lower()
REDIS_URL = os.getenv("REDIS_URL", "")
DB_PATH = os.getenv("DB_PATH") or str(ROOT_DIR / "data" / "clientping_state.db")
DATABASE_URL = os.getenv("DATABASE_URL")  # optional PostgreSQL URL (Supabase)
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "1"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "5"))
PG_CONNECT_TIMEOUT_SECONDS = float(os.getenv("PG_CONNECT_TIMEOUT_SECONDS", "10"))
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))
HEALTH_STORE_TIMEOUT_SECONDS = float(os.getenv("HEALTH_STORE_TIMEOUT_SECONDS", "2"))

# ── Automation engine ────────────────────────────────────────────
USER_HISTORY_LIMIT = int(os.getenv("USER_HISTORY_LIMIT", "10"))
MAX_FLOW_DEPTH = int(os.getenv("MAX_FLOW_DEPTH", "5"))
# When no flow fires, answer conversationally with the AI (webhook-ai behaviour).
AUTO_AI_REPLY = os.getenv("AUTO_AI_REPLY", "0") == "1"
FALLBACK_REPLY = os.getenv(
    "FALLBACK_REPLY",
    "Sorry, something went wrong on our side. Please try again in a moment.",
)

# ── Messaging platforms ──────────────────────────────────────────
TELEGRAM_BOT_TOKEN = (os.getenv("TELEGRAM_BOT_TOKEN", "") or "").strip()
TELEGRAM_WEBHOOK_URL = (os.getenv("TELEGRAM_WEBHOOK_URL", "") or "").strip()
TELEGRAM_WEBHOOK_SECRET = (os.getenv("TELEGRAM_WEBHOOK_SECRET", "") or "").strip()
TELEGRAM_API_BASE = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org")
TELEGRAM_USE_POLLING = os.getenv("TELEGRAM_USE_POLLING", "0") == "1"

WHATSAPP_ACCESS_TOKEN = (os.getenv("WHATSAPP_ACCESS_TOKEN", "") or "").strip()
WHATSAPP_PHONE_NUMBER_ID = (os.getenv("WHATSAPP_PHONE_NUMBER_ID", "") or "").strip()
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v19.0")
META_APP_SECRET = os.getenv("META_APP_SECRET", "") or os.getenv("FB_APP_SECRET", "")

# Outbound HTTP timeouts (seconds) - keep provider calls from hanging webhook workers.
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "12"))
HTTP_CONNECT_TIMEOUT_SECONDS = float(os.getenv("HTTP_CONNECT_TIMEOUT_SECONDS", "5"))
# Cap concurrent provider API calls per instance
PROVIDER_MAX_CONCURRENCY = int(os.getenv("PROVIDER_MAX_CONCURRENCY", "4"))
BULK_SEND_DELAY_SECONDS = float(os.getenv("BULK_SEND_DELAY_SECONDS", "1.0"))

# ── AI ───────────────────────────────────────────────────────────
OPENAI_API_KEY = (os.getenv("OPENAI_API_KEY", "") or "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "300"))

# ── Auth ─────────────────────────────────────────────────────────
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "")
SUPABASE_JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")
DISABLE_AUTH = os.getenv("DISABLE_AUTH", "0") == "1"

# ── Webhook ingress queue ────────────────────────────────────────
# ACK providers quickly and process in background.
WEBHOOK_QUEUE_MAXSIZE = int(os.getenv("WEBHOOK_QUEUE_MAXSIZE", "1000"))
WEBHOOK_WORKERS = int(os.getenv("WEBHOOK_WORKERS", "2"))
# Safety timeout for processing a single webhook event (seconds). If exceeded, we log and drop that event.
WEBHOOK_PROCESSING_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", "120"))
WEBHOOK_ENQUEUE_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_ENQUEUE_TIMEOUT_SECONDS", "1.5"))
# Serverless deployments have no long-lived workers: process inside the request instead.
WEBHOOK_PROCESS_INLINE = os.getenv("WEBHOOK_PROCESS_INLINE", "0") == "1"
WEBHOOK_USE_REDIS_STREAM = os.getenv("WEBHOOK_USE_REDIS_STREAM", "1") == "1"
WEBHOOK_STREAM_KEY = os.getenv("WEBHOOK_STREAM_KEY", "clientping:webhooks")
WEBHOOK_STREAM_GROUP = os.getenv("WEBHOOK_STREAM_GROUP", "webhook-workers")
WEBHOOK_STREAM_DLQ_KEY = os.getenv("WEBHOOK_STREAM_DLQ_KEY", "clientping:webhooks:dlq")
WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))
WEBHOOK_CLAIM_MIN_IDLE_MS = int(os.getenv("WEBHOOK_CLAIM_MIN_IDLE_MS", "60000"))  # 60s

# ── HTTP surface ─────────────────────────────────────────────────
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
SEND_TEXT_PER_MIN = int(os.getenv("SEND_TEXT_PER_MIN", "30"))
CONTACTS_PAGE_LIMIT = 100

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# Verbose logging flag (minimize noisy payload dumps when off)
LOG_VERBOSE = os.getenv("LOG_VERBOSE", "0") == "1"


def _vlog(*args, **kwargs):
    if LOG_VERBOSE:
        print(*args, **kwargs)
