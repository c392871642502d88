"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the POS transaction cache used by ``pos_sync``.
"""

from .pos import VENDOR_COLUMNS, Base, PosTransaction, UTCDateTime

__all__ = [
    "Base",
    "PosTransaction",
    "UTCDateTime",
    "VENDOR_COLUMNS",
]
