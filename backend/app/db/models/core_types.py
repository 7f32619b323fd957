import enum

class PartyRole(str, enum.Enum):
    vendor = "vendor"
    customer = "customer"

class POStatus(str, enum.Enum):
    draft = "draft"
    submitted = "submitted"
    approved = "approved"
    partially_received = "partially-received"
    fulfilled = "fulfilled"
    cancelled = "cancelled"
    closed = "closed"

class MovementAction(str, enum.Enum):
    receive = "receive"
    reserve = "reserve"
    commit = "commit"
    fulfill = "fulfill"
    adjust = "adjust"
    release = "release"

class BackorderStatus(str, enum.Enum):
    open = "open"
    fulfilled = "fulfilled"
    ignored = "ignored"
    converted = "converted"

class IdempotencyKind(str, enum.Enum):
    explicit_key = "explicit-key"
    content_signature = "content-signature"
