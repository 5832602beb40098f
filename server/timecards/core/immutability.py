"""
Append-only enforcement for the timecard audit log.

The audit trail is the only durable record of why a timecard looks the way it
does, so its rows are never updated or deleted. The rule is enforced at three
layers:

1. The service layer (timecards.services.audit_service) only ever inserts.
2. The ORM listeners in this module reject flushes that would UPDATE or
   DELETE an audit row, and ORM-enabled bulk ``update()``/``delete()``
   statements aimed at the audit table.
3. Database triggers (POSTGRES_TRIGGERS and SQLITE_TRIGGERS below, also
   installed by the Alembic migration) reject raw SQL that gets past the ORM.

Usage:

    from timecards.core.immutability import register_immutability_listeners
    register_immutability_listeners()  # once, at startup
"""
import logging

from sqlalchemy import DDL, event
from sqlalchemy.orm import Session

from timecards.models.audit_entry import TimecardAuditEntry

logger = logging.getLogger(__name__)

AUDIT_TABLE = TimecardAuditEntry.__tablename__


class ImmutabilityViolationError(Exception):
    """Attempted to modify or delete a write-once audit entry."""

    code = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_id: str, operation: str):
        self.entity_id = entity_id
        self.operation = operation
        super().__init__(
            f"Audit entry {entity_id} is immutable: {operation} is not allowed"
        )


def _block_update(mapper, connection, target):
    logger.error(
        "Blocked UPDATE of audit entry",
        extra={"entity_id": str(target.id), "operation": "UPDATE"},
    )
    raise ImmutabilityViolationError(str(target.id), "UPDATE")


def _block_delete(mapper, connection, target):
    logger.error(
        "Blocked DELETE of audit entry",
        extra={"entity_id": str(target.id), "operation": "DELETE"},
    )
    raise ImmutabilityViolationError(str(target.id), "DELETE")


def _block_pending_deletes(session, flush_context, instances):
    # Mapper-level before_delete fires after the flush plan is built; checking
    # here aborts before any SQL is emitted.
    for obj in session.deleted:
        if isinstance(obj, TimecardAuditEntry):
            raise ImmutabilityViolationError(str(obj.id), "DELETE")


def _block_bulk_statements(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mappers = orm_execute_state.all_mappers
    if any(m.class_ is TimecardAuditEntry for m in mappers):
        operation = "UPDATE" if orm_execute_state.is_update else "DELETE"
        logger.error("Blocked bulk %s of audit entries", operation)
        raise ImmutabilityViolationError("*", operation)


_LISTENERS = (
    (TimecardAuditEntry, "before_update", _block_update),
    (TimecardAuditEntry, "before_delete", _block_delete),
    (Session, "before_flush", _block_pending_deletes),
    (Session, "do_orm_execute", _block_bulk_statements),
)


def register_immutability_listeners():
    """Install the ORM guards. Safe to call more than once."""
    for target, name, fn in _LISTENERS:
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners():
    """Remove the ORM guards.

    Only for tests that need to prove the database triggers on their own.
    """
    for target, name, fn in _LISTENERS:
        if event.contains(target, name, fn):
            event.remove(target, name, fn)


# Database-level guards. PostgreSQL statements are also installed by the
# Alembic migration; the SQLite pair keeps local and test databases honest.
POSTGRES_TRIGGER_FUNCTION = f"""
CREATE OR REPLACE FUNCTION {AUDIT_TABLE}_reject_change() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION '{AUDIT_TABLE} is append-only: %% is not allowed', TG_OP;
END;
$$ LANGUAGE plpgsql
"""

POSTGRES_TRIGGERS = [
    f"CREATE TRIGGER trg_{AUDIT_TABLE}_no_update BEFORE UPDATE ON {AUDIT_TABLE} "
    f"FOR EACH ROW EXECUTE FUNCTION {AUDIT_TABLE}_reject_change()",
    f"CREATE TRIGGER trg_{AUDIT_TABLE}_no_delete BEFORE DELETE ON {AUDIT_TABLE} "
    f"FOR EACH ROW EXECUTE FUNCTION {AUDIT_TABLE}_reject_change()",
]

SQLITE_TRIGGERS = [
    f"CREATE TRIGGER IF NOT EXISTS trg_{AUDIT_TABLE}_no_update BEFORE UPDATE ON {AUDIT_TABLE} "
    f"BEGIN SELECT RAISE(ABORT, '{AUDIT_TABLE} is append-only: UPDATE is not allowed'); END",
    f"CREATE TRIGGER IF NOT EXISTS trg_{AUDIT_TABLE}_no_delete BEFORE DELETE ON {AUDIT_TABLE} "
    f"BEGIN SELECT RAISE(ABORT, '{AUDIT_TABLE} is append-only: DELETE is not allowed'); END",
]


def _attach_trigger_ddl():
    table = TimecardAuditEntry.__table__
    event.listen(
        table, "after_create",
        DDL(POSTGRES_TRIGGER_FUNCTION).execute_if(dialect="postgresql"),
    )
    for statement in POSTGRES_TRIGGERS:
        event.listen(table, "after_create", DDL(statement).execute_if(dialect="postgresql"))
    for statement in SQLITE_TRIGGERS:
        event.listen(table, "after_create", DDL(statement).execute_if(dialect="sqlite"))


_attach_trigger_ddl()
