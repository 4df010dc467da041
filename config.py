import os
import logging
from dotenv import load_dotenv

# Load .env before anything reads os.getenv
load_dotenv()

WHOOP_CLIENT_ID = os.getenv("WHOOP_CLIENT_ID", "")
WHOOP_CLIENT_SECRET = os.getenv("WHOOP_CLIENT_SECRET", "")
WHOOP_REDIRECT_URI = os.getenv("WHOOP_REDIRECT_URI", "")

WHOOP_API_BASE = os.getenv("WHOOP_API_BASE", "https://api.prod.whoop.com/developer/v2")
WHOOP_AUTH_URL = os.getenv("WHOOP_AUTH_URL", "https://api.prod.whoop.com/oauth/oauth2/auth")
WHOOP_TOKEN_URL = os.getenv("WHOOP_TOKEN_URL", "https://api.prod.whoop.com/oauth/oauth2/token")
WHOOP_SCOPES = os.getenv(
    "WHOOP_SCOPES",
    "offline read:recovery read:cycles read:sleep read:workout read:profile",
)
WHOOP_REFRESH_SCOPE = os.getenv("WHOOP_REFRESH_SCOPE", "offline")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///coach.db")

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "0.5"))
HISTORY_DAYS = int(os.getenv("HISTORY_DAYS", "35"))
MAX_PAGES = int(os.getenv("MAX_PAGES", "10"))

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-2024-08-06")
OPENAI_URL = os.getenv("OPENAI_URL", "https://api.openai.com/v1/chat/completions")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str | None = None):
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
