import os


# Helper functions to get numeric values from environment variables, with a default.
def _get_int_env(key, default):
    value = os.environ.get(key)
    if value and value.isdigit():
        return int(value)
    return default


def _get_float_env(key, default):
    value = os.environ.get(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_bool_env(key, default):
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# -- Network Configuration --
# Port to listen on for DHT traffic. 0 lets the OS pick one.
# Can be overridden by environment variable: DHT_PORT
DHT_PORT = _get_int_env("DHT_PORT", 0)

# Address to bind the UDP socket to.
# Can be overridden by environment variable: DHT_HOST
DHT_HOST = os.environ.get("DHT_HOST", "0.0.0.0")

# Public rendezvous nodes used when no bootstrap file is available.
BOOTSTRAP_NODES = (
    "router.bittorrent.com:6881",
    "router.utorrent.com:6881",
)

# File holding the contact list and the last known public IP.
# Can be overridden by environment variable: BOOTSTRAP_FILE
BOOTSTRAP_FILE = os.environ.get("BOOTSTRAP_FILE", "bootstrap.json")


# -- Routing Configuration --
# K-bucket size.
# Can be overridden by environment variable: DHT_K
K = _get_int_env("DHT_K", 20)

# Number of parallel queries per lookup round.
# Can be overridden by environment variable: DHT_ALPHA
ALPHA = _get_int_env("DHT_ALPHA", 8)

# Seconds to wait for a single KRPC response.
# Can be overridden by environment variable: DHT_QUERY_TIMEOUT
QUERY_TIMEOUT = _get_float_env("DHT_QUERY_TIMEOUT", 2.0)

# Number of rounds of an iterative lookup.
# Can be overridden by environment variable: DHT_LOOKUP_MAX_HOPS
LOOKUP_MAX_HOPS = _get_int_env("DHT_LOOKUP_MAX_HOPS", 8)

# Maximum number of store contacts a target is resolved to.
CLOSEST_STORES_LIMIT = _get_int_env("DHT_CLOSEST_STORES_LIMIT", 64)

# Reject get/get_peers queries from nodes whose ID is not bound to their IP.
# Can be overridden by environment variable: DHT_ENFORCE_NODE_ID
ENFORCE_NODE_ID = _get_bool_env("DHT_ENFORCE_NODE_ID", True)


# -- Client Configuration --
# Number of storing peers that must acknowledge a put for it to succeed.
# Can be overridden by environment variable: DHT_PUT_MIN_ACKS
PUT_MIN_ACKS = _get_int_env("DHT_PUT_MIN_ACKS", 1)

# Backoff between polling attempts of a get, in seconds.
POLL_INITIAL_DELAY = _get_float_env("DHT_POLL_INITIAL_DELAY", 1.0)
POLL_MAX_DELAY = _get_float_env("DHT_POLL_MAX_DELAY", 30.0)

# Lifetime of a resolved store set, in seconds. 0 keeps entries for the
# lifetime of the process.
# Can be overridden by environment variable: DHT_STORE_CACHE_TTL
STORE_CACHE_TTL = _get_float_env("DHT_STORE_CACHE_TTL", 0)
