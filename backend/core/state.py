# backend/core/state.py

from enum import Enum


class LinkState(str, Enum):
    """Lifecycle of one upstream link. Terminal states are never left."""

    CREATED = "created"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETIRING = "retiring"
    FAILED = "failed"
    CLOSED = "closed"


class LinkErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIAL = "invalid_credential"
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
