from enum import Enum, IntEnum

# Capability counts are clamped to this range when the routing matrix is built
MIN_ENDPOINT_COUNT = 1
MAX_ENDPOINT_COUNT = 64

# Sentinel endpoint id: input 0 is "Off", output 0 is "All"
SENTINEL_ID = 0


class Instruction(Enum):
    """Logical instructions understood by both wire variants."""
    SWITCH_VIDEO = "switch_video"
    SWITCH_AUDIO = "switch_audio"
    STORE_SETUP = "store_setup"
    RECALL_SETUP = "recall_setup"
    DELETE_SETUP = "delete_setup"
    FRONT_PANEL_LOCK = "front_panel_lock"
    CAPABILITY_QUERY = "capability_query"
    REQUEST_VIDEO_STATUS = "request_video_status"
    REQUEST_AUDIO_STATUS = "request_audio_status"


class Medium(Enum):
    VIDEO = "video"
    AUDIO = "audio"


class Capability(IntEnum):
    """Auto-detectable matrix properties, valued as their Protocol 2000 codes."""
    INPUTS = 1
    OUTPUTS = 2
    PRESETS = 3


class ProtocolVariant(Enum):
    BINARY_FIXED = "2000"
    TEXT_LINE = "3000"


class TransportKind(Enum):
    STREAM = "TCP"
    DATAGRAM = "UDP"


class RouteDialect(Enum):
    """Which Protocol 3000 verb is used to route."""
    VID = "VID"
    ROUTE = "ROUTE"


class DisconnectDialect(Enum):
    """How a Protocol 3000 matrix expects 'no source' to be written."""
    ZERO = "0"
    INPUTS_PLUS_ONE = "+1"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
