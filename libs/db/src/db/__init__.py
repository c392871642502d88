"""db: shared database library (SQLAlchemy).

Public exports
--------------
- ``Base`` and ``metadata`` for schema bootstrap
- ORM models in ``db.models.pos`` (re-exported for convenience)
- Engine/session helpers in ``db.client``
"""

from __future__ import annotations

from .models.pos import Base, PosTransaction

metadata = Base.metadata

__all__ = [
    "Base",
    "metadata",
    "PosTransaction",
]
