import os
import logging
from pathlib import Path

from dotenv import load_dotenv

# ensure .env located next to this file is loaded (robust even if working dir differs)
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(env_path)

logger = logging.getLogger("config")

# -----------------------
# PhonePe credentials / environment
# -----------------------
MODE = os.getenv("MODE", "sandbox").lower()
IS_PRODUCTION = MODE == "production"

CLIENT_ID = os.getenv("CLIENT_ID") or os.getenv("MERCHANT_ID")
CLIENT_SECRET = os.getenv("CLIENT_SECRET")
CLIENT_VERSION = os.getenv("CLIENT_VERSION", "1")
MERCHANT_ID = os.getenv("MERCHANT_ID")

PHONEPE_TOKEN_URL = os.getenv(
    "PHONEPE_TOKEN_URL",
    "https://api.phonepe.com/apis/identity-manager/v1/oauth/token"
    if IS_PRODUCTION
    else "https://api-preprod.phonepe.com/apis/pg-sandbox/v1/oauth/token",
)
PHONEPE_CHECKOUT_BASE = os.getenv(
    "PHONEPE_CHECKOUT_BASE",
    "https://api.phonepe.com/apis/pg"
    if IS_PRODUCTION
    else "https://api-preprod.phonepe.com/apis/pg-sandbox",
)

# -----------------------
# Public URLs
# -----------------------
PORT = int(os.getenv("PORT", "5000"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", f"http://localhost:{PORT}").rstrip("/")
PHONEPE_CALLBACK_URL = os.getenv("PHONEPE_CALLBACK_URL", "")
SUCCESS_REDIRECT_URL = os.getenv("SUCCESS_REDIRECT_URL", "https://www.perlynbeauty.co/payment-success")
FAILURE_REDIRECT_URL = os.getenv("FAILURE_REDIRECT_URL", "https://www.perlynbeauty.co/payment-failed")

# -----------------------
# Tunables
# -----------------------
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "20"))
# PhonePe tokens live ~30 minutes; refresh a little before that
TOKEN_TTL_SEC = int(os.getenv("TOKEN_TTL_SEC", "1500"))
TOKEN_SAFETY_MARGIN_SEC = int(os.getenv("TOKEN_SAFETY_MARGIN_SEC", "60"))
PAYMENT_EXPIRE_AFTER_SEC = int(os.getenv("PAYMENT_EXPIRE_AFTER_SEC", "1200"))
REWARD_RUPEES_PER_POINT = int(os.getenv("REWARD_RUPEES_PER_POINT", "100"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# -----------------------
# Storage / notification providers
# -----------------------
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Perlyn Beauty <orders@perlynbeauty.co>")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

SMS_API_KEY = os.getenv("SMS_API_KEY")
SMS_API_URL = os.getenv("SMS_API_URL", "https://www.fast2sms.com/dev/bulkV2")


def log_env_check(log: logging.Logger = logger) -> None:
    # safe boolean checks only (DO NOT print secret values)
    # pass the server logger so the lines show up under uvicorn's handlers
    log.info("ENV CHECK - MODE: %s", MODE)
    log.info("ENV CHECK - CLIENT_ID present: %s", bool(CLIENT_ID))
    log.info("ENV CHECK - CLIENT_SECRET present: %s", bool(CLIENT_SECRET))
    log.info("ENV CHECK - SUPABASE_URL present: %s", bool(SUPABASE_URL))
    log.info("ENV CHECK - SUPABASE_SERVICE_KEY present: %s", bool(SUPABASE_SERVICE_KEY))
    log.info("ENV CHECK - RESEND_API_KEY present: %s", bool(RESEND_API_KEY))
    log.info("ENV CHECK - SMS_API_KEY present: %s", bool(SMS_API_KEY))
