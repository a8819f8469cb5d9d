import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# =====================================================
# SECRETS
# =====================================================
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")
CRON_SECRET = os.getenv("CRON_SECRET")
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")

# =====================================================
# SHIPROCKET
# =====================================================
SHIPROCKET_API_BASE_URL = os.getenv(
    "SHIPROCKET_API_BASE_URL",
    "https://apiv2.shiprocket.in/v1/external",
)
SHIPROCKET_EMAIL = os.getenv("SHIPROCKET_EMAIL")
SHIPROCKET_PASSWORD = os.getenv("SHIPROCKET_PASSWORD")
SHIPROCKET_WEBHOOK_TOKEN = os.getenv("SHIPROCKET_WEBHOOK_TOKEN")
SHIPROCKET_TRACKING_URL = os.getenv(
    "SHIPROCKET_TRACKING_URL",
    "https://shiprocket.co/tracking",
)

SHIPROCKET_MAX_REQUESTS_PER_MINUTE = int(os.getenv("SHIPROCKET_MAX_REQUESTS_PER_MINUTE", 30))
SHIPROCKET_INTER_REQUEST_DELAY_MS = int(os.getenv("SHIPROCKET_INTER_REQUEST_DELAY_MS", 100))
SHIPROCKET_BATCH_DELAY_MS = int(os.getenv("SHIPROCKET_BATCH_DELAY_MS", 2000))
SHIPROCKET_MIN_RESYNC_MINUTES = int(os.getenv("SHIPROCKET_MIN_RESYNC_MINUTES", 15))

STATUS_SYNC_BATCH_SIZE = int(os.getenv("STATUS_SYNC_BATCH_SIZE", 10))
STATUS_SYNC_INTERVAL_SECONDS = int(os.getenv("STATUS_SYNC_INTERVAL_SECONDS", 60 * 30))
STATUS_SYNC_ENABLED = os.getenv("STATUS_SYNC_ENABLED", "true").lower() == "true"

# =====================================================
# EMAIL
# =====================================================
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

EMAIL_FROM = os.getenv("EMAIL_FROM", "orders@example.com")
COMPANY_NAME = os.getenv("COMPANY_NAME", "Storefront")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "ADMIN_API_KEY": ADMIN_API_KEY,
        "CRON_SECRET": CRON_SECRET,
        "RAZORPAY_KEY_ID": RAZORPAY_KEY_ID,
        "RAZORPAY_KEY_SECRET": RAZORPAY_KEY_SECRET,
        "RAZORPAY_WEBHOOK_SECRET": RAZORPAY_WEBHOOK_SECRET,
        "SHIPROCKET_EMAIL": SHIPROCKET_EMAIL,
        "SHIPROCKET_PASSWORD": SHIPROCKET_PASSWORD,
        "SMTP_HOST": SMTP_HOST,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
