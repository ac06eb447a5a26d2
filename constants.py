import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Rate limits (count per window)
GLOBAL_RATE_LIMIT = int(os.getenv("GLOBAL_RATE_LIMIT", 20))
GLOBAL_RATE_WINDOW_SECONDS = float(os.getenv("GLOBAL_RATE_WINDOW_SECONDS", 60))
ROOM_CREATE_RATE_LIMIT = int(os.getenv("ROOM_CREATE_RATE_LIMIT", 3))
ROOM_CREATE_RATE_WINDOW_SECONDS = float(os.getenv("ROOM_CREATE_RATE_WINDOW_SECONDS", 60))
JOIN_RATE_LIMIT = int(os.getenv("JOIN_RATE_LIMIT", 10))
JOIN_RATE_WINDOW_SECONDS = float(os.getenv("JOIN_RATE_WINDOW_SECONDS", 60))
CHAT_RATE_LIMIT = int(os.getenv("CHAT_RATE_LIMIT", 10))
CHAT_RATE_WINDOW_SECONDS = float(os.getenv("CHAT_RATE_WINDOW_SECONDS", 10))

# Max concurrent memberships per IP per room
MAX_CONNECTIONS_PER_IP = int(os.getenv("MAX_CONNECTIONS_PER_IP", 5))

MAX_CHAT_LENGTH = int(os.getenv("MAX_CHAT_LENGTH", 500))
MAX_NAME_LENGTH = int(os.getenv("MAX_NAME_LENGTH", 32))

# Room lifecycle
ROOM_GRACE_SECONDS = float(os.getenv("ROOM_GRACE_SECONDS", 120))
ROOM_SWEEP_INTERVAL_SECONDS = float(os.getenv("ROOM_SWEEP_INTERVAL_SECONDS", 300))

PASSWORD_HASH_ITERATIONS = int(os.getenv("PASSWORD_HASH_ITERATIONS", 200_000))

ACK_TIMEOUT_SECONDS = float(os.getenv("ACK_TIMEOUT_SECONDS", 10))

# Client side reconnection
RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", 12))
RECONNECT_INTERVAL_SECONDS = float(os.getenv("RECONNECT_INTERVAL_SECONDS", 10))
