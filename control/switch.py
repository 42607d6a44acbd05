"""
Switch orchestrator — move live traffic from one backend to the other.

    IDLE → DUMPING → RESTORING → VERIFYING → COMMITTED
    any step can end in FAILED: back to IDLE with the pointer untouched

Steps of a switch from A to B:
  1. take the switch lock (a second caller gets SwitchInProgress) and the
     maintenance gate (every other writer gets MaintenanceMode)
  2. DUMPING    A.dump_all(), one consistent snapshot
  3. RESTORING  migrate B, then B.restore_all(snapshot) in one transaction
  4. VERIFYING  A.counts() == B.counts(), else VerificationFailed
  5. COMMITTED  save the snapshot as the one retained rollback point,
                then flip the pointer

The pointer flip is the single commit point: verify-then-flip, never
flip-then-verify. A failed attempt leaves B in an undefined state; it is
simply overwritten by the next attempt.

Rollback restores the retained snapshot into the backend that was active
before the last switch, verifies it against the snapshot, and flips the
pointer back.
"""

import logging
import threading
from enum import Enum

from adapters.errors import SwitchInProgress, ValidationError, VerificationFailed
from adapters.maintenance import MaintenanceGate
from adapters.util import now_iso

from .migrations import MigrationManager

log = logging.getLogger(__name__)

SWITCH_MODES = ("copy-then-switch",)


class SwitchState(str, Enum):
    IDLE = "IDLE"
    DUMPING = "DUMPING"
    RESTORING = "RESTORING"
    VERIFYING = "VERIFYING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"


def _mismatched(source_counts: dict, target_counts: dict) -> list:
    return sorted(
        t for t in set(source_counts) | set(target_counts)
        if source_counts.get(t, 0) != target_counts.get(t, 0)
    )


class SwitchOrchestrator:
    """
    Args:
        adapters:  {"embedded": adapter, "networked": adapter}; opened lazily
        pointer:   ActiveBackend over the control store
        snapshots: SnapshotStore for the retained dump and the audit log
        gate:      MaintenanceGate shared with every adapter
        migrations_dir: per-name override of the migration directory
    """

    def __init__(self, adapters: dict, pointer, snapshots, gate=None, migrations_dir=None):
        self.adapters = adapters
        self.pointer = pointer
        self.snapshots = snapshots
        self.gate = gate or MaintenanceGate()
        self.migrations_dir = migrations_dir or {}
        self.state = SwitchState.IDLE
        self.last_error = None
        self._lock = threading.Lock()
        self._states = []

    def _enter(self, state):
        self.state = state
        self._states.append(state.value)
        log.info("switch state → %s", state.value)

    def _adapter(self, name):
        try:
            return self.adapters[name].init()
        except KeyError:
            raise ValidationError(
                f"Unknown backend '{name}'. Configured: {', '.join(sorted(self.adapters))}"
            ) from None

    def _acquire(self):
        if not self._lock.acquire(blocking=False):
            raise SwitchInProgress("A backend switch or rollback is already running")
        self._states = []
        self.last_error = None

    def _release(self):
        self.state = SwitchState.IDLE
        self._lock.release()

    # ── Switch ────────────────────────────────────────────────

    def switch(self, target, mode="copy-then-switch", verify=True, requested_by="system") -> dict:
        """
        Copy the active backend into ``target`` and point traffic at it.

        ``verify`` is accepted for request compatibility; verification
        always runs.
        """
        if mode not in SWITCH_MODES:
            raise ValidationError(f"Unsupported switch mode '{mode}'. Supported: {', '.join(SWITCH_MODES)}")
        if target not in self.adapters:
            raise ValidationError(
                f"Unknown backend '{target}'. Configured: {', '.join(sorted(self.adapters))}"
            )
        if not verify:
            log.warning("switch requested with verify=False; verifying anyway")

        self._acquire()
        try:
            source = self.pointer.get()
            if source == target:
                return {"ok": True, "changed": False, "source": source, "target": target}
            with self.gate.hold(f"switch {source} → {target}"):
                return self._switch(source, target, requested_by)
        finally:
            self._release()

    def _switch(self, source, target, requested_by):
        snapshot_file = None
        try:
            src, dst = self._adapter(source), self._adapter(target)

            self._enter(SwitchState.DUMPING)
            snapshot = src.dump_all()

            self._enter(SwitchState.RESTORING)
            MigrationManager(dst, self.migrations_dir.get(target)).apply()
            dst.restore_all(snapshot)

            self._enter(SwitchState.VERIFYING)
            source_counts, target_counts = src.counts(), dst.counts()
            if _mismatched(source_counts, target_counts):
                raise VerificationFailed(source_counts, target_counts)

            self._enter(SwitchState.COMMITTED)
            snapshot_file = self.snapshots.save(snapshot, source, target)
            self.pointer.flip(
                target,
                updated_by=requested_by,
                previous_driver=source,
                snapshot_file=snapshot_file,
                switched_at=now_iso(),
                switched_by=requested_by,
                rolled_back_at=None,
            )
        except Exception as exc:
            # the new snapshot only counts once the pointer names it
            if snapshot_file is not None:
                self.snapshots.discard(snapshot_file)
            self._fail("switch", exc, source=source, target=target, requested_by=requested_by)
            raise

        self.snapshots.prune(keep=snapshot_file)
        result = {
            "ok": True,
            "changed": True,
            "source": source,
            "target": target,
            "states": list(self._states),
            "verify": {"source_counts": source_counts, "target_counts": target_counts},
            "snapshot_file": snapshot_file,
        }
        self.snapshots.audit({
            "event": "switch", "ok": True, "source": source, "target": target,
            "requested_by": requested_by, "snapshot_file": snapshot_file,
        })
        log.info("switched %s → %s (by %s)", source, target, requested_by)
        return result

    # ── Rollback ──────────────────────────────────────────────

    def rollback(self, requested_by="system") -> dict:
        """Undo the last switch. Reports ok=False when nothing is retained."""
        self._acquire()
        try:
            meta = self.pointer.meta()
            snapshot_file = meta.get("snapshot_file")
            previous = meta.get("previous_driver")
            if not previous or not self.snapshots.exists(snapshot_file):
                log.warning("rollback requested by %s but no snapshot is retained", requested_by)
                return {"ok": False, "reason": "No rollback snapshot available"}
            current = meta["active_driver"]
            with self.gate.hold(f"rollback {current} → {previous}"):
                return self._rollback(current, previous, snapshot_file, requested_by)
        finally:
            self._release()

    def _rollback(self, current, previous, snapshot_file, requested_by):
        try:
            dst = self._adapter(previous)
            snapshot = self.snapshots.load(snapshot_file)

            self._enter(SwitchState.RESTORING)
            dst.restore_all(snapshot)

            self._enter(SwitchState.VERIFYING)
            expected = {name: len(rows) for name, rows in snapshot.items()}
            actual = dst.counts()
            if _mismatched(expected, actual):
                raise VerificationFailed(expected, actual)

            self._enter(SwitchState.COMMITTED)
            self.pointer.flip(
                previous,
                updated_by=requested_by,
                previous_driver=current,
                snapshot_file=None,
                rolled_back_at=now_iso(),
            )
        except Exception as exc:
            self._fail("rollback", exc, source=current, target=previous, requested_by=requested_by)
            raise

        self.snapshots.discard(snapshot_file)
        self.snapshots.audit({
            "event": "rollback", "ok": True, "source": current, "target": previous,
            "requested_by": requested_by, "snapshot_file": snapshot_file,
        })
        log.info("rolled back %s → %s (by %s)", current, previous, requested_by)
        return {
            "ok": True,
            "rolled_back_from": current,
            "rolled_back_to": previous,
            "states": list(self._states),
        }

    # ── Helpers ───────────────────────────────────────────────

    def _fail(self, event, exc, **fields):
        self._enter(SwitchState.FAILED)
        self.last_error = str(exc)
        log.exception("%s %s → %s failed", event, fields.get("source"), fields.get("target"))
        self.snapshots.audit({"event": event, "ok": False, "error": str(exc),
                              "states": list(self._states), **fields})

    def status(self) -> dict:
        meta = self.pointer.meta()
        return {
            "state": self.state.value,
            "active": meta["active_driver"],
            "maintenance": self.gate.active,
            "maintenance_reason": self.gate.reason,
            "rollback_available": bool(meta.get("previous_driver"))
            and self.snapshots.exists(meta.get("snapshot_file")),
            "last_error": self.last_error,
            "meta": meta,
        }

    def __repr__(self):
        return f"<SwitchOrchestrator {sorted(self.adapters)} state={self.state.value}>"
