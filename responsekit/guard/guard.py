"""
Deduplication guard.

Admits at most one live execution per correlation key. Every attempt is
audited before any decision is made: a pending AuditRecord is written first,
then the guard either moves it to in_progress (admitted) or to failed
(rejected), with a comment explaining why.

Example:
    >>> guard = DeduplicationGuard(store, AdvisoryLockChecker("data/locks"))
    >>> async with guard.admission("job-42", request_json) as admission:
    ...     if not admission.admitted:
    ...         return  # a live attempt already owns job-42
    ...     ...
    ...     await guard.close(admission.record, response_json, duration)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import AsyncIterator

from responsekit.config.logging import get_logger
from responsekit.guard.liveness import (
    KeyLock,
    LivenessChecker,
    LivenessUnavailableError,
    ProcessFingerprint,
)
from responsekit.store.base import RecordStore
from responsekit.store.models import (
    TERMINAL_AUDIT_STATUSES,
    AuditRecord,
    AuditStatus,
    check_audit_transition,
)

logger = get_logger(__name__)


def format_comment(text: str, now: datetime | None = None) -> str:
    """Render one timestamped comment line."""
    now = now or datetime.now(UTC)
    return f"[{now.strftime('%m-%d %H:%M:%S.%f')[:-3]}] {text}\n"


@dataclass
class Admission:
    """
    Outcome of an admission attempt.

    Attributes:
        correlation_key: Key the attempt was admitted (or rejected) for
        record: The attempt's own audit record
        admitted: Whether the attempt may proceed
        blocking_record_id: Id of the live attempt that caused a rejection, if known
    """

    correlation_key: str
    record: AuditRecord
    admitted: bool
    blocking_record_id: int | None = None
    _lock: KeyLock | None = field(default=None, repr=False)

    def release(self) -> None:
        """Release the key lock, if one is held. Safe to call more than once."""
        if self._lock is not None:
            self._lock.release()
            self._lock = None


class DeduplicationGuard:
    """
    Cross-process admission control keyed by correlation key.

    Args:
        store: Record store holding audit rows
        liveness: Strategy deciding whether another attempt is still alive
    """

    def __init__(self, store: RecordStore, liveness: LivenessChecker):
        self._store = store
        self._liveness = liveness

    @asynccontextmanager
    async def admission(
        self,
        correlation_key: str,
        request_payload: str,
    ) -> AsyncIterator[Admission]:
        """admit() as a scope that always releases the key lock on exit."""
        admission = await self.admit(correlation_key, request_payload)
        try:
            yield admission
        finally:
            admission.release()

    async def admit(self, correlation_key: str, request_payload: str) -> Admission:
        """
        Decide whether a new attempt for correlation_key may run.

        Callers that use admit() directly own the returned Admission and must
        call release() on it; admission() does that automatically.
        """
        fingerprint_error: LivenessUnavailableError | None = None
        try:
            fingerprint = self._liveness.current_fingerprint()
        except LivenessUnavailableError as e:
            fingerprint_error = e
            fingerprint = ProcessFingerprint(0, None)

        record = await self._store.create_audit_record(
            AuditRecord(
                correlation_key=correlation_key,
                request_payload=request_payload,
                status=AuditStatus.PENDING,
                owner_pid=fingerprint.pid or None,
                owner_start_time=fingerprint.start_time,
            )
        )
        logger.debug(f"Created audit record #{record.id} for key '{correlation_key}'")

        if fingerprint_error is not None and self._liveness.requires_scan:
            logger.error(f"Cannot fingerprint current process: {fingerprint_error}")
            record = await self._fail(
                record, "FAILED: Cannot determine process liveness - system error"
            )
            return Admission(correlation_key, record, admitted=False)

        try:
            lock = self._liveness.try_acquire(correlation_key)
        except OSError as e:
            logger.error(f"Cannot acquire lock for key '{correlation_key}': {e}")
            record = await self._fail(record, f"FAILED: Cannot acquire key lock - {e}")
            return Admission(correlation_key, record, admitted=False)

        if lock is None:
            blocking = await self._store.find_open_audit_records(
                correlation_key, exclude_id=record.id
            )
            blocking_id = blocking[0].id if blocking else None
            holder = f"ID: {blocking_id}" if blocking_id else "key lock held"
            record = await self._fail(record, f"REJECTED: Another process is active ({holder})")
            logger.info(f"Rejected attempt #{record.id} for key '{correlation_key}' ({holder})")
            return Admission(correlation_key, record, admitted=False, blocking_record_id=blocking_id)

        try:
            blocking_id = await self._reap_older_attempts(record)
        except BaseException:
            lock.release()
            raise

        if blocking_id is not None:
            lock.release()
            record = await self._fail(record, f"REJECTED: Another process is active (ID: {blocking_id})")
            logger.info(
                f"Rejected attempt #{record.id} for key '{correlation_key}' "
                f"(attempt #{blocking_id} is alive)"
            )
            return Admission(correlation_key, record, admitted=False, blocking_record_id=blocking_id)

        record = await self._set_status(record, AuditStatus.IN_PROGRESS)
        record = await self.comment(record, "SUCCESS: Process started, ready to work")
        logger.info(f"Admitted attempt #{record.id} for key '{correlation_key}'")
        return Admission(correlation_key, record, admitted=True, _lock=lock)

    async def _reap_older_attempts(self, record: AuditRecord) -> int | None:
        """
        Fail older open attempts whose owner is gone.

        Returns the id of the first older attempt that is still alive, or None.
        Only attempts created before this one are considered, so of two
        simultaneous attempts the older one always wins.
        """
        older = [
            other
            for other in await self._store.find_open_audit_records(
                record.correlation_key, exclude_id=record.id
            )
            if other.id < record.id
        ]

        for other in older:
            if other.owner_pid is None:
                continue

            fingerprint = ProcessFingerprint(other.owner_pid, other.owner_start_time)
            if self._liveness.requires_scan:
                if other.owner_start_time is None:
                    continue
                if self._liveness.is_alive(fingerprint):
                    return other.id
            elif other.status == AuditStatus.PENDING and self._liveness.is_alive(fingerprint):
                # Still deciding; it will find the key locked and reject itself.
                continue

            await self._mark_stale(other, killer_id=record.id)
            await self.comment(record, f"Marked dead process as failed: {other.id}")

        return None

    async def _mark_stale(self, stale: AuditRecord, killer_id: int) -> None:
        current = await self._store.get_audit_record(stale.id)
        if current is None or current.is_terminal:
            return
        await self._store.update_audit_record(stale.id, status=AuditStatus.FAILED)
        await self.comment(
            current,
            f"Process marked as failed - not active in system (killed by process ID: {killer_id})",
        )
        logger.warning(
            f"Marked stale attempt #{stale.id} for key '{stale.correlation_key}' as failed"
        )

    async def open_continuation(
        self,
        admission: Admission,
        request_payload: str,
        reason: str,
        conversation_ref: str | None = None,
    ) -> AuditRecord:
        """
        Open an audit record for an internal follow-up step of an admitted attempt.

        Tool-output rounds and context-expiry retries belong to the same
        logical attempt, so they skip admission. The key lock stays held by
        the admission for their whole duration.

        Raises:
            RuntimeError: If the admission was rejected
        """
        if not admission.admitted:
            raise RuntimeError("Cannot continue a rejected attempt")

        root = admission.record
        record = await self._store.create_audit_record(
            AuditRecord(
                correlation_key=admission.correlation_key,
                request_payload=request_payload,
                status=AuditStatus.PENDING,
                owner_pid=root.owner_pid,
                owner_start_time=root.owner_start_time,
                conversation_ref=conversation_ref,
            )
        )
        record = await self._set_status(record, AuditStatus.IN_PROGRESS)
        record = await self.comment(record, f"Continuation of attempt #{root.id}: {reason}")
        logger.debug(f"Opened continuation #{record.id} of attempt #{root.id} ({reason})")
        return record

    async def comment(self, record: AuditRecord, text: str) -> AuditRecord:
        """Append a timestamped comment to an audit record."""
        return await self._store.append_audit_comment(record.id, format_comment(text))

    async def close(
        self,
        record: AuditRecord,
        response_text: str | None = None,
        duration_seconds: float | None = None,
        status: AuditStatus = AuditStatus.COMPLETED,
    ) -> AuditRecord:
        """
        Write the terminal state of an attempt.

        Raises:
            ValueError: If status is not terminal
            InvalidTransitionError: If the record was already closed
        """
        if status not in TERMINAL_AUDIT_STATUSES:
            raise ValueError(f"close() needs a terminal status, got '{status}'")

        fields: dict = {}
        if response_text is not None:
            fields["response_payload"] = response_text
        if duration_seconds is not None:
            fields["duration_seconds"] = round(duration_seconds, 2)

        record = await self._set_status(record, status, **fields)
        record = await self.comment(
            record, "Process failed" if status == AuditStatus.FAILED else "Process completed"
        )
        logger.debug(f"Closed attempt #{record.id} as {record.status.value}")
        return record

    async def _fail(self, record: AuditRecord, comment: str) -> AuditRecord:
        current = await self._store.get_audit_record(record.id)
        if current is not None and not current.is_terminal:
            record = await self._set_status(current, AuditStatus.FAILED)
        return await self.comment(record, comment)

    async def _set_status(self, record: AuditRecord, status: AuditStatus, **fields) -> AuditRecord:
        current = await self._store.get_audit_record(record.id)
        if current is None:
            raise KeyError(record.id)
        check_audit_transition(current.status, status)
        return await self._store.update_audit_record(record.id, status=status, **fields)
