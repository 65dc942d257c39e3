import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Applied to every remote call made through the Mongo client
DATA_STORE_TIMEOUT_MS = int(os.getenv("DATA_STORE_TIMEOUT_MS", 10000))
READ_RETRIES = int(os.getenv("READ_RETRIES", 1))

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 5))
IDEMPOTENCY_WINDOW_HOURS = int(os.getenv("IDEMPOTENCY_WINDOW_HOURS", 24))
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", 7))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
