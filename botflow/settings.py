import logging
import os

from dotenv import load_dotenv
from google.auth import default as google_auth_default
from google.cloud import secretmanager
from google.oauth2 import service_account

from botflow.memo_cache import MemoCache

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("botflow_backend")

# --- Configuration ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

BOT_MANAGER_BASE_URL        = os.environ.get("BOT_MANAGER_BASE_URL", "https://api.pypestream.com/botmanager")
BOT_MANAGER_TOKEN           = os.environ.get("BOT_MANAGER_TOKEN")
BOT_MANAGER_TOKEN_SECRET_ID = os.environ.get("BOT_MANAGER_TOKEN_SECRET_ID")
BOT_MANAGER_TIMEOUT_SECONDS = float(os.environ.get("BOT_MANAGER_TIMEOUT_SECONDS", "60"))

REFERENCE_BASE_URL          = os.environ.get("REFERENCE_BASE_URL", "")
REFERENCE_API_KEY           = os.environ.get("REFERENCE_API_KEY", "")
REFERENCE_TIMEOUT_SECONDS   = float(os.environ.get("REFERENCE_TIMEOUT_SECONDS", "30"))
REFERENCE_TEXT_PATH         = os.environ.get("REFERENCE_TEXT_PATH", "")

DEFAULT_MODEL               = os.environ.get("DEFAULT_MODEL", "gemini-2.5-flash")
LLM_TIMEOUT_SECONDS         = float(os.environ.get("LLM_TIMEOUT_SECONDS", "300"))
MAX_REFINE_ITERATIONS       = int(os.environ.get("MAX_REFINE_ITERATIONS", "5"))


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def _load_bot_manager_token() -> str:
    if BOT_MANAGER_TOKEN:
        return BOT_MANAGER_TOKEN

    if BOT_MANAGER_TOKEN_SECRET_ID:
        creds = _build_creds()
        client = secretmanager.SecretManagerServiceClient(credentials=creds)
        name = client.secret_version_path(PROJECT_ID, BOT_MANAGER_TOKEN_SECRET_ID, "latest")
        resp = client.access_secret_version(request={"name": name})
        logger.info("[Settings] Bot manager token loaded from Secret Manager")
        return resp.payload.data.decode("utf-8")

    raise RuntimeError("No BOT_MANAGER_TOKEN and no Secret Manager configured")


def _load_reference_text() -> str:
    if not REFERENCE_TEXT_PATH or not os.path.exists(REFERENCE_TEXT_PATH):
        return ""
    with open(REFERENCE_TEXT_PATH, "r", encoding="utf-8") as f:
        return f.read()


BOT_MANAGER_TOKEN_CACHE = MemoCache(_load_bot_manager_token, name="bot_manager_token")
REFERENCE_TEXT_CACHE = MemoCache(_load_reference_text, name="reference_text")


def get_bot_manager_token() -> str:
    return BOT_MANAGER_TOKEN_CACHE.get()
