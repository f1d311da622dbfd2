import os

SERVICE_NAME = os.environ.get("SERVICE_NAME", "stock-service")

KAFKA_BOOTSTRAP_SERVERS = os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "kafka:29092")
CONSUMER_GROUP = os.environ.get("CONSUMER_GROUP", "stock-group")
CONSUMER_WORKERS = int(os.environ.get("CONSUMER_WORKERS", "4"))

# Either a plain URL or a Sentinel setup (REDIS_SENTINEL_HOSTS="host:port,host:port").
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_SENTINEL_HOSTS = os.environ.get("REDIS_SENTINEL_HOSTS", "")
REDIS_SERVICE_NAME = os.environ.get("REDIS_SERVICE_NAME", "mymaster")
REDIS_PASSWORD = os.environ.get("REDIS_PASSWORD") or None
REDIS_DB = int(os.environ.get("REDIS_DB", "0"))

TELEMETRY_ENABLED = os.environ.get("TELEMETRY_ENABLED", "false").lower() in ("1", "true", "yes")
OTLP_ENDPOINT = os.environ.get("OTLP_ENDPOINT", "http://localhost:4317")

# Optimistic concurrency on stock rows
RESERVATION_MAX_ATTEMPTS = int(os.environ.get("RESERVATION_MAX_ATTEMPTS", "5"))
RESERVATION_BACKOFF_SECONDS = float(os.environ.get("RESERVATION_BACKOFF_SECONDS", "0.05"))

# Broker / store unavailability. Each Redis call retries briefly on its own
# (3 tries, 0.1s then 0.2s apart) before the consumer retries the whole
# event TRANSPORT_MAX_RETRIES times. With the defaults a message waits at
# most about 9s (5 x 0.3s inner plus 0.5+1+2+4s outer backoff, excluding
# connection timeouts) before it is dead-lettered.
TRANSPORT_MAX_RETRIES = int(os.environ.get("TRANSPORT_MAX_RETRIES", "5"))
TRANSPORT_BACKOFF_SECONDS = float(os.environ.get("TRANSPORT_BACKOFF_SECONDS", "0.5"))
TRANSPORT_BACKOFF_CAP = float(os.environ.get("TRANSPORT_BACKOFF_CAP", "30"))

# Saga deadlines
SAGA_TIMEOUT_SECONDS = float(os.environ.get("SAGA_TIMEOUT_SECONDS", "300"))
TIMEOUT_SCAN_INTERVAL = float(os.environ.get("TIMEOUT_SCAN_INTERVAL", "5"))
TIMEOUT_RETRY_SECONDS = float(os.environ.get("TIMEOUT_RETRY_SECONDS", "60"))

# Must outlive the broker's redelivery window.
DEDUP_RETENTION_SECONDS = int(os.environ.get("DEDUP_RETENTION_SECONDS", str(7 * 24 * 3600)))
# A delivery that committed an outcome but stalled before publishing it
# keeps other deliveries from republishing for this long.
DEDUP_PUBLISH_LEASE_SECONDS = int(os.environ.get("DEDUP_PUBLISH_LEASE_SECONDS", "30"))
