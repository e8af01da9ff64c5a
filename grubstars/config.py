# grubstars/config.py
from dotenv import load_dotenv
import os

load_dotenv()

# API Keys
YELP_API_KEY = os.getenv("YELP_API_KEY")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
TRIPADVISOR_API_KEY = os.getenv("TRIPADVISOR_API_KEY")

# URLs (override to point adapters at a mock server)
YELP_API_BASE_URL = os.getenv("YELP_API_BASE_URL", "https://api.yelp.com/v3")
GOOGLE_API_BASE_URL = os.getenv("GOOGLE_API_BASE_URL", "https://maps.googleapis.com/maps/api/place")
TRIPADVISOR_API_BASE_URL = os.getenv("TRIPADVISOR_API_BASE_URL", "https://api.content.tripadvisor.com/api/v1")

# Storage
DB_PATH = os.getenv("GRUB_STARS_DB_PATH", os.path.expanduser("~/.grub_stars/grub_stars.db"))

# Runtime parameters
DEFAULT_INDEX_LIMIT = 100
REQUESTS_PER_SECOND = int(os.getenv("REQUESTS_PER_SECOND", "10"))
HTTP_TIMEOUT_SECONDS = 30
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Monthly request budgets (None = unconstrained)
YELP_REQUEST_LIMIT = 5000
GOOGLE_REQUEST_LIMIT = 10000
TRIPADVISOR_REQUEST_LIMIT = None
