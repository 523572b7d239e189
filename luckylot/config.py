import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./luckylot.db")

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "mock").lower()  # 'cashfree' | 'mock'

CASHFREE_ENV = os.environ.get("CASHFREE_ENV", "test")
CASHFREE_CLIENT_ID = os.environ.get("CASHFREE_CLIENT_ID", "")
CASHFREE_CLIENT_SECRET = os.environ.get("CASHFREE_CLIENT_SECRET", "")
CASHFREE_API_VERSION = os.environ.get("CASHFREE_API_VERSION", "2023-08-01")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "20"))

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/api/mock/webhook"
)

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

# synchronous verification: 5 polls, 2 seconds apart
VERIFY_ATTEMPTS = int(os.getenv("VERIFY_ATTEMPTS", "5"))
VERIFY_DELAY_SECONDS = float(os.getenv("VERIFY_DELAY_SECONDS", "2.0"))

MAX_TICKETS_PER_ORDER = int(os.getenv("MAX_TICKETS_PER_ORDER", "100"))
PENDING_TTL_SECONDS = int(os.getenv("PENDING_TTL_SECONDS", "3600"))

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
