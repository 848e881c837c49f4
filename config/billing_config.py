# config/billing_config.py

import os
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))  # seconds
STRIPE_PRICE_PREMIUM = os.getenv("STRIPE_PRICE_PREMIUM")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Manual refresh retry policy
REFRESH_MAX_ATTEMPTS = int(os.getenv("REFRESH_MAX_ATTEMPTS", "3"))
REFRESH_BACKOFF_BASE = float(os.getenv("REFRESH_BACKOFF_BASE", "2"))  # seconds

# Compare-and-set rounds before a contended subscription write gives up
SUBSCRIPTION_WRITE_ATTEMPTS = int(os.getenv("SUBSCRIPTION_WRITE_ATTEMPTS", "5"))

# OpenAI keys saved through /api/settings must carry this prefix
API_KEY_PREFIX = "sk-"

SETTINGS_RATE_LIMIT_SECONDS = float(os.getenv("SETTINGS_RATE_LIMIT_SECONDS", "1"))
SETTINGS_RATE_LIMIT_MAX_KEYS = int(os.getenv("SETTINGS_RATE_LIMIT_MAX_KEYS", "10000"))

# Metadata keys that may carry our account id on Stripe objects
ACCOUNT_METADATA_KEYS = ("userId", "user_id")

PLAN_CONFIG: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free",
        "is_premium": False,
    },
    "premium": {
        "name": "Premium",
        "is_premium": True,
    },
}


def get_plan_config(plan: str) -> Dict[str, Any]:
    """Safely get the configuration for a given plan."""
    return PLAN_CONFIG.get(plan, PLAN_CONFIG["free"])
