"""Idempotent bootstrap of the cache table and its indexes.

``ensure_schema`` runs at the start of every pass. It creates
``pos_transactions`` when missing and then inspects the live index list so an
index dropped (or never created by an older bootstrap) is restored. Anything
already in place is left alone. Column changes are out of scope; this is not
a migration tool.
"""

from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from db.models.pos import PosTransaction

from .errors import SchemaEnsureError
from .logging_setup import get_logger

_logger = get_logger("pos_sync.schema")


def ensure_schema(engine: Engine) -> list[str]:
    """Guarantee the cache table and its three indexes exist.

    Returns the names of the objects created by this call (empty when the
    schema was already complete). Storage failures are raised as
    :class:`~pos_sync.errors.SchemaEnsureError`.
    """

    table = PosTransaction.__table__
    created: list[str] = []
    try:
        with engine.begin() as conn:
            inspector = inspect(conn)
            if not inspector.has_table(table.name):
                table.create(bind=conn)
                created.append(table.name)
                created.extend(sorted(ix.name for ix in table.indexes if ix.name))
            else:
                existing = {ix["name"] for ix in inspector.get_indexes(table.name)}
                for index in sorted(table.indexes, key=lambda ix: ix.name or ""):
                    if index.name not in existing:
                        index.create(bind=conn)
                        created.append(str(index.name))
    except SQLAlchemyError as e:
        _logger.error("sync:schema_failed error=%s", e.__class__.__name__)
        raise SchemaEnsureError(f"could not ensure {table.name} schema: {e}") from e

    if created:
        _logger.info("sync:schema_created objects=%s", ",".join(created))
    else:
        _logger.debug("sync:schema_ok table=%s", table.name)
    return created


def schema_exists(engine: Engine) -> bool:
    """Whether the cache table exists, without creating anything."""

    try:
        with engine.connect() as conn:
            return inspect(conn).has_table(PosTransaction.__tablename__)
    except SQLAlchemyError as e:
        raise SchemaEnsureError(f"could not inspect {PosTransaction.__tablename__}: {e}") from e


__all__ = ["ensure_schema", "schema_exists"]
