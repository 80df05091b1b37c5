"""Central configuration, read once from the environment at import."""
import os

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").upper()

# ── HTTP ──────────────────────────────────────────────────────────────────────
CORS_ORIGINS = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(",")
    if o.strip()
]

# ── Upstream sessions ─────────────────────────────────────────────────────────
POLL_INTERVAL_SEC = float(os.environ.get("POLL_INTERVAL_SEC", "5.0"))
# How long stop_session waits for an in-flight fetch before abandoning it.
STOP_GRACE_SEC    = float(os.environ.get("STOP_GRACE_SEC", str(POLL_INTERVAL_SEC)))
START_TIMEOUT_SEC = float(os.environ.get("START_TIMEOUT_SEC", "15.0"))

# ── Producers ─────────────────────────────────────────────────────────────────
PRODUCER = os.environ.get("PRODUCER", "simulated")   # "simulated" | "http"
UPSTREAM_URL_TEMPLATE = os.environ.get(
    "UPSTREAM_URL_TEMPLATE",
    "http://localhost:8081/gamesheet/{channel_id}.json",
)
UPSTREAM_TIMEOUT_SEC = float(os.environ.get("UPSTREAM_TIMEOUT_SEC", "10.0"))
SIM_SEED = os.environ.get("SIM_SEED", "scoreboard")
SIM_PERIOD_COUNT = 3
SIM_PERIOD_LENGTH_SEC = 20 * 60
SIM_CLOCK_STEP_SEC = 30          # game seconds elapsed per poll

# ── Client streams ────────────────────────────────────────────────────────────
CLIENT_QUEUE_MAXSIZE = int(os.environ.get("CLIENT_QUEUE_MAXSIZE", "64"))
CLIENT_ID_MAX_LEN    = 64

# ── Housekeeping ──────────────────────────────────────────────────────────────
HEARTBEAT_INTERVAL_SEC = float(os.environ.get("HEARTBEAT_INTERVAL_SEC", "20"))
# Clients registered over POST must attach a stream within this window.
ATTACH_TIMEOUT_SEC     = float(os.environ.get("ATTACH_TIMEOUT_SEC", "120"))
