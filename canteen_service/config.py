import os

# Persistent store.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./canteen.db")

# Pickup-token signing key. Falls back to the auth secret like the web tier did.
QR_SECRET = os.getenv("QR_SECRET") or os.getenv("JWT_SECRET") or "qrcode-secret"

# Real-time transport: "websocket" (in-process hub) or "rabbitmq" (topic exchange + relay).
NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "websocket")
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "rabbitmq")
EVENTS_EXCHANGE = os.getenv("EVENTS_EXCHANGE", "canteen.events")

# Bounded retries for transient conflicts inside a stock batch.
RESERVATION_MAX_ATTEMPTS = int(os.getenv("RESERVATION_MAX_ATTEMPTS", "3"))
RESERVATION_RETRY_DELAY = float(os.getenv("RESERVATION_RETRY_DELAY", "0.05"))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def get_qr_secret():
    """Return the current pickup-token signing key."""
    return QR_SECRET
