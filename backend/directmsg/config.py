import os


MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "directmsg")

# unset -> in-process bus (single worker only)
REDIS_URL = os.getenv("REDIS_URL")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))
ATTACHMENT_BASE_URL = os.getenv("ATTACHMENT_BASE_URL", "/attachments").rstrip("/")

DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "50"))
TYPING_TTL_MS = int(os.getenv("TYPING_TTL_MS", "3000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
