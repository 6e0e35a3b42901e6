"""
Client-side sync machinery.

Record versioning and conflict resolution live here because the server
engine applies the same ordering. The engine, queue and transports are
imported from their modules (or from the package root).
"""

from .conflict import ConflictDecision, Resolution, pick_winner, resolve, resolve_records
from .version import RecordVersion, business_fields, next_version, now_ms, stamp

__all__ = [
    "ConflictDecision",
    "RecordVersion",
    "Resolution",
    "business_fields",
    "next_version",
    "now_ms",
    "pick_winner",
    "resolve",
    "resolve_records",
    "stamp",
]
