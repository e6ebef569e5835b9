"""Escrow records linking a task to the funds held for it."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from errand_ledger_service.exceptions import AlreadyClosedError, NotFoundError, ServiceError
from errand_ledger_service.logging import get_logger
from errand_ledger_service.services.ledger_store import (
    DuplicateDocumentError,
    VersionConflictError,
)

if TYPE_CHECKING:
    from errand_ledger_service.services.ledger_store import LedgerStore

ESCROWS = "escrows"

ESCROW_STATUSES = frozenset({"active", "released", "refunded"})
_CLOSE_OUTCOMES = frozenset({"released", "refunded"})


def escrow_id_for(task_id: str) -> str:
    """One escrow per task, keyed by the task id."""
    return f"esc-{task_id}"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class EscrowManager:
    """
    Tracks the escrow record of each task.

    The record says how much is held for the task and for whom; the
    money itself sits in the wallets' escrow balances and is moved by
    the wallet ledger. Status only ever moves from ``active`` to
    ``released`` or ``refunded``.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    def open(
        self,
        task_id: str,
        requester_id: str,
        amount: int,
        commission_amount: int,
    ) -> dict[str, Any]:
        """
        Open the active escrow for a task.

        Raises:
            ServiceError: ESCROW_EXISTS if the task already has an escrow,
                INVALID_AMOUNT if the amounts are inconsistent.
        """
        if amount <= 0 or commission_amount < 0 or commission_amount > amount:
            raise ServiceError(
                "INVALID_AMOUNT",
                "Escrow amount must be positive and cover the commission",
                400,
                {"amount": amount, "commission_amount": commission_amount},
            )
        escrow_id = escrow_id_for(task_id)
        try:
            escrow = self._store.insert(
                ESCROWS,
                escrow_id,
                {
                    "escrow_id": escrow_id,
                    "task_id": task_id,
                    "requester_id": requester_id,
                    "runner_id": "",
                    "amount": amount,
                    "commission_amount": commission_amount,
                    "runner_amount": amount - commission_amount,
                    "runner_stake": 0,
                    "status": "active",
                    "released_at": None,
                    "refunded_at": None,
                },
            )
        except DuplicateDocumentError as exc:
            raise ServiceError(
                "ESCROW_EXISTS",
                "An escrow already exists for this task",
                409,
                {"task_id": task_id},
            ) from exc
        self._logger.info(
            "Escrow opened",
            extra={"escrow_id": escrow_id, "task_id": task_id, "amount": amount},
        )
        return escrow

    def get(self, escrow_id: str) -> dict[str, Any] | None:
        return self._store.get(ESCROWS, escrow_id)

    def get_for_task(self, task_id: str) -> dict[str, Any] | None:
        return self._store.get(ESCROWS, escrow_id_for(task_id))

    def _require_active(self, escrow_id: str) -> dict[str, Any]:
        escrow = self.get(escrow_id)
        if escrow is None:
            raise NotFoundError("escrow", {"escrow_id": escrow_id})
        if escrow["status"] != "active":
            raise AlreadyClosedError(
                f"Escrow is already {escrow['status']}",
                {"escrow_id": escrow_id},
            )
        return escrow

    def attach_runner(
        self,
        escrow_id: str,
        runner_id: str,
        *,
        runner_stake: int = 0,
    ) -> dict[str, Any]:
        """
        Record the runner on an active escrow. A runner can be attached once.

        Raises:
            AlreadyClosedError: the escrow is no longer active.
            ServiceError: RUNNER_ALREADY_ATTACHED for a different runner.
        """
        escrow = self._require_active(escrow_id)
        if escrow["runner_id"]:
            if escrow["runner_id"] == runner_id:
                return escrow
            raise ServiceError(
                "RUNNER_ALREADY_ATTACHED",
                "Escrow already has a runner",
                409,
                {"escrow_id": escrow_id},
            )
        try:
            return self._store.put(
                ESCROWS,
                escrow_id,
                {"runner_id": runner_id, "runner_stake": runner_stake},
                merge=True,
                expected_version=escrow["version"],
            )
        except VersionConflictError as exc:
            raise ServiceError(
                "RUNNER_ALREADY_ATTACHED",
                "Escrow was modified concurrently",
                409,
                {"escrow_id": escrow_id},
            ) from exc

    def close(self, escrow_id: str, outcome: str) -> dict[str, Any]:
        """
        Close an active escrow as ``released`` or ``refunded``.

        Raises:
            AlreadyClosedError: the escrow was already closed, including by
                a concurrent caller.
        """
        if outcome not in _CLOSE_OUTCOMES:
            raise ServiceError(
                "INVALID_OUTCOME",
                "Escrow outcome must be 'released' or 'refunded'",
                400,
                {"outcome": outcome},
            )
        escrow = self._require_active(escrow_id)
        stamp_field = "released_at" if outcome == "released" else "refunded_at"
        try:
            closed = self._store.put(
                ESCROWS,
                escrow_id,
                {"status": outcome, stamp_field: _now_iso()},
                merge=True,
                expected_version=escrow["version"],
            )
        except VersionConflictError as exc:
            raise AlreadyClosedError(
                "Escrow was closed concurrently",
                {"escrow_id": escrow_id},
            ) from exc
        self._logger.info(
            "Escrow closed",
            extra={"escrow_id": escrow_id, "task_id": escrow["task_id"], "outcome": outcome},
        )
        return closed

    def total_active(self) -> int:
        """Total reward amount held in active escrows."""
        return self._store.sum(ESCROWS, "amount", [("status", "==", "active")])

    def count_by_status(self) -> dict[str, int]:
        return {
            status: self._store.count(ESCROWS, [("status", "==", status)])
            for status in sorted(ESCROW_STATUSES)
        }
