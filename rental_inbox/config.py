import os


MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "rental_inbox")

# Upper bound for every per-source conversation query
CONVERSATIONS_PAGE_SIZE = int(os.getenv("CONVERSATIONS_PAGE_SIZE", "20"))
# Max conversations enriched with a message lookup per merge pass
PREVIEW_ENRICH_LIMIT = int(os.getenv("PREVIEW_ENRICH_LIMIT", "8"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
