import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "memory" keeps everything in this process, "redis" shares pools and rooms across instances
STATE_BACKEND = os.getenv("STATE_BACKEND", "memory")

CHAT_CATEGORIES = tuple(c.strip() for c in os.getenv("CHAT_CATEGORIES", "video,text").split(",") if c.strip())
DEFAULT_CATEGORY = os.getenv("DEFAULT_CATEGORY", "video")

SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 86400))
POOL_LOCK_TIMEOUT_SECONDS = int(os.getenv("POOL_LOCK_TIMEOUT_SECONDS", 5))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Events forwarded verbatim to the other member of a room
RELAY_EVENTS = ("offer", "answer", "ice-candidate", "chat-message")
