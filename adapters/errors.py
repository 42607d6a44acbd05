"""
Error types shared by the adapters and the control layer.

Every error carries a stable ``code`` and an HTTP-like ``status`` so an
outer interface can map it without string matching:

    ValidationError      400  bad input, rejected at the boundary
    PermissionDenied     403  caller lacks the permission
    NotFoundError        404  referenced row does not exist
    SwitchInProgress     409  another switch/rollback holds the lock
    MaintenanceMode      503  writes are frozen during a cut-over
    StorageUnavailable   503  backend unreachable (infrastructure)
    MigrationError       500  schema migration failed

Driver exceptions raised inside a transaction are NOT wrapped — they roll
back and propagate as-is. Only connectivity failures become
StorageUnavailable, so callers can tell "service unreachable" from
"bad request".
"""


class StoreError(Exception):
    """Base for everything this package raises on purpose."""

    status = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"error": self.message, "code": self.code}
        if self.details is not None:
            out["details"] = self.details
        return out


class ValidationError(StoreError):
    status = 400
    code = "BAD_REQUEST"


class PermissionDenied(StoreError):
    status = 403
    code = "FORBIDDEN"


class NotFoundError(StoreError):
    status = 404
    code = "NOT_FOUND"


class SwitchInProgress(StoreError):
    status = 409
    code = "SWITCH_IN_PROGRESS"


class MaintenanceMode(StoreError):
    status = 503
    code = "MAINTENANCE"


class StorageUnavailable(StoreError):
    """The backend could not be reached. Infrastructure, not the caller's fault."""

    status = 503
    code = "UNAVAILABLE"


class MigrationError(StoreError):
    code = "MIGRATION_FAILED"


class MissingDownMigration(MigrationError):
    code = "MISSING_DOWN_MIGRATION"


class NothingToRollBack(MigrationError):
    status = 409
    code = "NOTHING_TO_ROLL_BACK"


class VerificationFailed(StoreError):
    """Row counts differ between source and target after a restore."""

    code = "VERIFY_MISMATCH"

    def __init__(self, source_counts: dict, target_counts: dict):
        mismatched = sorted(
            t for t in set(source_counts) | set(target_counts)
            if source_counts.get(t, 0) != target_counts.get(t, 0)
        )
        super().__init__(
            f"Verification failed for tables: {', '.join(mismatched)}",
            details={"source_counts": source_counts, "target_counts": target_counts},
        )
        self.source_counts = source_counts
        self.target_counts = target_counts
