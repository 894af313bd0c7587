import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL")

# Bookings are validated against the facility's local calendar
FACILITY_TIMEZONE = os.getenv("FACILITY_TIMEZONE", "Asia/Kolkata")

# AI gateway (OpenAI-compatible chat completions)
AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
AI_API_KEY = os.getenv("AI_API_KEY")
AI_MODEL = os.getenv("AI_MODEL", "google/gemini-2.5-flash")
ADVISOR_TIMEOUT_SECONDS = float(os.getenv("ADVISOR_TIMEOUT_SECONDS", "10"))
PRICING_MIN_MULTIPLIER = float(os.getenv("PRICING_MIN_MULTIPLIER", "0.5"))
PRICING_MAX_MULTIPLIER = float(os.getenv("PRICING_MAX_MULTIPLIER", "2.0"))

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "inr")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "15"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
