# KRPC message dictionary keys
KRPC_Y = b"y"
KRPC_T = b"t"
KRPC_R = b"r"
KRPC_Q = b"q"
KRPC_A = b"a"
KRPC_E = b"e"
KRPC_IP = b"ip"
KRPC_RO = b"ro"

# KRPC message type values
KRPC_QUERY = b"q"
KRPC_RESPONSE = b"r"
KRPC_ERROR = b"e"

# KRPC query methods
KRPC_PING = b"ping"
KRPC_FIND_NODE = b"find_node"
KRPC_GET_PEERS = b"get_peers"
KRPC_GET = b"get"
KRPC_PUT = b"put"

# KRPC argument keys
KRPC_ID = b"id"
KRPC_NODES = b"nodes"
KRPC_VALUES = b"values"
KRPC_INFO_HASH = b"info_hash"
KRPC_PORT = b"port"
KRPC_IMPLIED_PORT = b"implied_port"
KRPC_TOKEN = b"token"
KRPC_TARGET = b"target"

# BEP44 argument keys
KRPC_V = b"v"
KRPC_SEQ = b"seq"
KRPC_CAS = b"cas"
KRPC_K = b"k"
KRPC_SALT = b"salt"
KRPC_SIG = b"sig"

# Error codes
ERR_GENERIC = 201
ERR_SERVER = 202
ERR_PROTOCOL = 203
ERR_METHOD_UNKNOWN = 204
ERR_MESSAGE_TOO_BIG = 205
ERR_INVALID_SIGNATURE = 206
ERR_SALT_TOO_BIG = 207
ERR_CAS_MISMATCH = 301
ERR_SEQ_LESS_THAN_CURRENT = 302
ERR_INSECURE_NODE_ID = 305

ERROR_MESSAGES = {
    ERR_GENERIC: b"Generic Error",
    ERR_SERVER: b"Server Error",
    ERR_PROTOCOL: b"Protocol Error",
    ERR_METHOD_UNKNOWN: b"Method Unknown",
    ERR_MESSAGE_TOO_BIG: b"message (v field) too big",
    ERR_INVALID_SIGNATURE: b"invalid signature",
    ERR_SALT_TOO_BIG: b"salt (salt field) too big",
    ERR_CAS_MISMATCH: b"the CAS hash mismatched, re-read value and try again",
    ERR_SEQ_LESS_THAN_CURRENT: b"sequence number less than current",
    ERR_INSECURE_NODE_ID: b"Insecure node ID",
}

# BEP44 limits
MAX_VALUE_SIZE = 1000  # bencoded v must be strictly smaller
MAX_SALT_SIZE = 64
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64

# Sizes
NODE_ID_SIZE = 20
COMPACT_NODE_SIZE = 26
COMPACT_PEER_SIZE = 6
TOKEN_SIZE = 8

# Kademlia constants
MIN_NODE_ID = 0
MAX_NODE_ID = 2**160 - 1
