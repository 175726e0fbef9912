from typing import Final

DOMAIN = "ev_driver"

# Coordinator polling interval (seconds) for history + price; live data is pushed
UPDATE_INTERVAL_DEFAULT: Final = 60

# Tariff fallback when the CSMS price is unavailable (currency units per kWh)
DEFAULT_PRICE_PER_KWH: Final = 3500
PRICE_CACHE_TTL: Final = 300  # seconds

# kg CO2 saved per kWh charged
CO2_EMISSION_FACTOR: Final = 0.25

# Identity token handling
TOKEN_EARLY_RENEW_SKEW: Final = 60  # seconds before expiry to refresh
TOKEN_MAX_REFRESH_ATTEMPTS: Final = 3
TOKEN_REFRESH_RETRY_BASE_DELAY: Final = 2  # seconds base (multiplied by attempt)
TOKEN_DEFAULT_EXPIRES_IN: Final = 3600

# Realtime stream reconnect/backoff timings
STREAM_RECONNECT_INITIAL_BACKOFF: Final = 1.0
STREAM_RECONNECT_MAX_BACKOFF: Final = 60.0
STREAM_READ_TIMEOUT: Final = 90  # server keep-alive arrives every ~30 s

# Realtime database paths
LIVE_STATIONS_PATH: Final = "live/stations"
LIVE_PRICING_PATH: Final = "live/pricing/pricePerKwh"

# Document collections
COLLECTION_STATIONS: Final = "stations"
COLLECTION_SESSIONS: Final = "chargingSessions"
COLLECTION_USERS: Final = "users"

# Config keys
CONF_EMAIL: str = "email"
CONF_PASSWORD: str = "password"  # noqa: S105 - config field name, not a secret
CONF_API_KEY: str = "api_key"
CONF_PROJECT_ID: str = "project_id"
CONF_DATABASE_URL: str = "database_url"
CONF_API_BASE_URL: str = "api_base_url"
CONF_STATION_IDS: str = "station_ids"
CONF_DEFAULT_PRICE: str = "default_price_per_kwh"
CONF_UPDATE_INTERVAL: str = "update_interval"

# Service names
SERVICE_START_CHARGING = "start_charging"
SERVICE_STOP_CHARGING = "stop_charging"
SERVICE_REFRESH = "refresh"

# Identity provider endpoints
IDENTITY_BASE_URL = "https://identitytoolkit.googleapis.com/v1"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
DOCUMENTS_BASE_URL = "https://firestore.googleapis.com/v1"

# Shared HTTP timeout (aiohttp.ClientTimeout) parameters
HTTP_CONNECT_TIMEOUT: Final = 5
HTTP_TOTAL_TIMEOUT: Final = 15

# Identity request timeouts
AUTH_CONNECT_TIMEOUT: Final = 5
AUTH_TOTAL_TIMEOUT: Final = 10

# Elapsed-time sensors re-render on this cadence while a session is running
LIVE_METRICS_REFRESH_INTERVAL: Final = 10  # seconds
