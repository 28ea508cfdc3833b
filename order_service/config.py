import os
from dotenv import load_dotenv

load_dotenv()

# Database connection string. SQLite is fine for local runs; production uses PostgreSQL.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orders.db")

# RabbitMQ host for order events. Leave empty to disable publishing.
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "")
EVENTS_EXCHANGE = os.getenv("EVENTS_EXCHANGE", "events")
RABBITMQ_CONNECT_ATTEMPTS = int(os.getenv("RABBITMQ_CONNECT_ATTEMPTS", "3"))

# Public base URL of this service, used to build provider webhook URLs.
SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8000")

# --- Payment providers ---
PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox")
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_BN_CODE = os.getenv("PAYPAL_BN_CODE", "")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

MOLLIE_API_KEY = os.getenv("MOLLIE_API_KEY", "")

# Timeout (seconds) for every outbound provider HTTP call.
PAYMENT_HTTP_TIMEOUT = float(os.getenv("PAYMENT_HTTP_TIMEOUT", "10"))

# Client retry policy when a capture fails transiently.
CAPTURE_RETRY_AFTER_SECONDS = int(os.getenv("CAPTURE_RETRY_AFTER_SECONDS", "5"))
CAPTURE_MAX_VERIFY_ATTEMPTS = int(os.getenv("CAPTURE_MAX_VERIFY_ATTEMPTS", "12"))

# --- Scheduling ---
MIN_PICKUP_LEAD_MINUTES = int(os.getenv("MIN_PICKUP_LEAD_MINUTES", "30"))
PICKUP_SLOT_INTERVAL_MINUTES = int(os.getenv("PICKUP_SLOT_INTERVAL_MINUTES", "15"))
PICKUP_DAYS_AHEAD = int(os.getenv("PICKUP_DAYS_AHEAD", "7"))

# Language used for name snapshots on order line items.
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "de")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
