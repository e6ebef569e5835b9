"""Task lifecycle management: the state machine that moves money through escrow."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from errand_ledger_service.exceptions import (
    InsufficientFundsError,
    InvalidTransitionError,
    NotFoundError,
    ServiceError,
    UnauthorizedError,
)
from errand_ledger_service.logging import get_logger
from errand_ledger_service.services import commission
from errand_ledger_service.services.escrow_manager import escrow_id_for
from errand_ledger_service.services.ledger_store import VersionConflictError
from errand_ledger_service.services.locks import KeyedLocks

if TYPE_CHECKING:
    from collections.abc import Callable

    from errand_ledger_service.config import PlatformSettings
    from errand_ledger_service.services.escrow_manager import EscrowManager
    from errand_ledger_service.services.ledger_store import Filter, LedgerStore
    from errand_ledger_service.services.notifications import NotificationOutbox
    from errand_ledger_service.services.profiles import ProfileRegistry
    from errand_ledger_service.services.wallet_ledger import WalletLedger

TASKS = "tasks"

VALID_STATUSES = frozenset(
    {"pending", "accepted", "in_progress", "completed", "cancelled", "disputed"}
)
TERMINAL_STATUSES = frozenset({"completed", "cancelled", "disputed"})

# Statuses each transition may start from
_ALLOWED_FROM: dict[str, frozenset[str]] = {
    "accept": frozenset({"pending"}),
    "start": frozenset({"accepted"}),
    "complete": frozenset({"accepted", "in_progress"}),
    "cancel": frozenset({"pending", "accepted", "in_progress"}),
    "dispute": frozenset({"accepted", "in_progress"}),
}

_MAX_TITLE_LENGTH = 200
_MAX_DESCRIPTION_LENGTH = 5000
_MAX_REASON_LENGTH = 2000

DEFAULT_REVIEW_RATING = 5
DEFAULT_REVIEW_COMMENT = "Task completed successfully!"

_TASK_FIELDS: tuple[str, ...] = (
    "task_id",
    "requester_id",
    "runner_id",
    "title",
    "description",
    "category",
    "status",
    "reward_amount",
    "commission_amount",
    "runner_amount",
    "pickup_location",
    "delivery_location",
    "deadline",
    "expected_duration",
    "escrow_id",
    "created_at",
    "updated_at",
    "accepted_at",
    "started_at",
    "completed_at",
    "cancelled_at",
    "disputed_at",
    "cancellation_reason",
    "dispute_reason",
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _invalid(message: str) -> ServiceError:
    return ServiceError("INVALID_PAYLOAD", message, 400, {})


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_text(data: dict[str, Any], field: str, max_length: int) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise _invalid(f"Field '{field}' must be a non-empty string")
    value = value.strip()
    if len(value) > max_length:
        raise _invalid(f"Field '{field}' must be at most {max_length} characters")
    return value


def _parse_location(data: dict[str, Any], field: str) -> dict[str, Any]:
    location = data.get(field)
    if not isinstance(location, dict):
        raise _invalid(f"Field '{field}' must be an object")
    address = location.get("address")
    if not isinstance(address, str) or not address.strip():
        raise _invalid(f"Field '{field}.address' must be a non-empty string")
    coordinates = location.get("coordinates")
    if not isinstance(coordinates, dict):
        raise _invalid(f"Field '{field}.coordinates' must be an object")
    lat = coordinates.get("lat")
    lng = coordinates.get("lng")
    if not _is_number(lat) or not -90 <= lat <= 90:
        raise _invalid(f"Field '{field}.coordinates.lat' must be a latitude")
    if not _is_number(lng) or not -180 <= lng <= 180:
        raise _invalid(f"Field '{field}.coordinates.lng' must be a longitude")
    parsed: dict[str, Any] = {
        "address": address.strip(),
        "coordinates": {"lat": lat, "lng": lng},
    }
    instructions = location.get("instructions")
    if instructions is not None:
        if not isinstance(instructions, str):
            raise _invalid(f"Field '{field}.instructions' must be a string")
        parsed["instructions"] = instructions
    return parsed


def _parse_deadline(value: object) -> str:
    if not isinstance(value, str):
        raise _invalid("Field 'deadline' must be an ISO 8601 timestamp")
    try:
        deadline = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise _invalid("Field 'deadline' must be an ISO 8601 timestamp") from exc
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=UTC)
    if deadline <= datetime.now(UTC):
        raise _invalid("Field 'deadline' must be in the future")
    return deadline.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_reason(value: object, *, required: bool) -> str | None:
    if value is None:
        if required:
            raise _invalid("Field 'reason' is required")
        return None
    if not isinstance(value, str):
        raise _invalid("Field 'reason' must be a string")
    value = value.strip()
    if required and not value:
        raise _invalid("Field 'reason' must not be empty")
    if len(value) > _MAX_REASON_LENGTH:
        raise _invalid(f"Field 'reason' must be at most {_MAX_REASON_LENGTH} characters")
    return value or None


class TaskManager:
    """
    Manages the task lifecycle: creation, acceptance, start, completion,
    cancellation and dispute.

    Each transition validates input, authorizes the caller, checks the
    current status and only then asks the wallet ledger and escrow
    manager to move money. Transitions on one task are serialized by a
    per-task lock, and the status write is a compare-and-swap on the
    task's version.
    """

    def __init__(
        self,
        store: LedgerStore,
        wallets: WalletLedger,
        escrows: EscrowManager,
        profiles: ProfileRegistry,
        notifications: NotificationOutbox,
        platform: PlatformSettings,
    ) -> None:
        self._store = store
        self._wallets = wallets
        self._escrows = escrows
        self._profiles = profiles
        self._notifications = notifications
        self._platform = platform
        self._locks = KeyedLocks()
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _task_to_response(task: dict[str, Any]) -> dict[str, Any]:
        return {field: task.get(field) for field in _TASK_FIELDS}

    def _require_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get(TASKS, task_id)
        if task is None:
            raise NotFoundError("task", {"task_id": task_id})
        return task

    @staticmethod
    def _check_status(task: dict[str, Any], action: str) -> None:
        allowed = _ALLOWED_FROM[action]
        if task["status"] in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Task is already {task['status']}",
                {"task_id": task["task_id"]},
            )
        if task["status"] not in allowed:
            raise InvalidTransitionError(
                f"Cannot {action} task in '{task['status']}' status",
                {"task_id": task["task_id"], "allowed": sorted(allowed)},
            )

    def _claim(self, task: dict[str, Any], status: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Write the new status only if nobody else changed the task since it was read."""
        try:
            return self._store.put(
                TASKS,
                task["task_id"],
                {"status": status, **changes},
                merge=True,
                expected_version=task["version"],
            )
        except VersionConflictError as exc:
            raise InvalidTransitionError(
                "Task was modified concurrently",
                {"task_id": task["task_id"]},
            ) from exc

    def _restore(self, task: dict[str, Any], fields: tuple[str, ...]) -> None:
        """Put back the given fields after a failed transition."""
        self._store.put(
            TASKS,
            task["task_id"],
            {field: task.get(field) for field in ("status", *fields)},
            merge=True,
        )

    def _follow_up(self, step: str, task_id: str, action: Callable[[], Any]) -> None:
        """Run a step that happens after funds have settled; failures are logged."""
        try:
            action()
        except Exception:
            self._logger.exception(
                "Post-transition step failed",
                extra={"task_id": task_id, "step": step},
            )

    def _notify(
        self,
        task: dict[str, Any],
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
    ) -> None:
        self._follow_up(
            f"notify:{notification_type}",
            task["task_id"],
            lambda: self._notifications.notify(
                user_id,
                notification_type,
                title,
                message,
                {"task_id": task["task_id"]},
            ),
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_task(self, requester_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Post a task and hold its reward in escrow.

        The reward leaves the requester's balance before the task exists,
        so a requester without funds never gets a task row. If the escrow
        record or the task cannot be written afterwards, the hold is
        refunded and the error re-raised.

        Raises:
            ServiceError: MAINTENANCE_MODE, INVALID_PAYLOAD, INVALID_AMOUNT,
                INVALID_SETTINGS, UNAUTHORIZED, WALLET_NOT_FOUND,
                INSUFFICIENT_FUNDS.
        """
        platform = self._platform
        if platform.maintenance_mode:
            raise ServiceError(
                "MAINTENANCE_MODE",
                "The platform is under maintenance, try again later",
                503,
                {},
            )

        title = _require_text(payload, "title", _MAX_TITLE_LENGTH)
        description = _require_text(payload, "description", _MAX_DESCRIPTION_LENGTH)
        category = payload.get("category")
        if category not in platform.supported_categories:
            raise _invalid(
                f"Field 'category' must be one of {sorted(platform.supported_categories)}"
            )
        reward_amount = commission.validate_task_amount(
            payload.get("reward_amount"),
            platform.minimum_task_amount,
            platform.maximum_task_amount,
        )
        pickup_location = _parse_location(payload, "pickup_location")
        delivery_location = _parse_location(payload, "delivery_location")
        deadline = _parse_deadline(payload.get("deadline"))
        expected_duration = payload.get("expected_duration")
        if expected_duration is not None and (
            not isinstance(expected_duration, int)
            or isinstance(expected_duration, bool)
            or expected_duration <= 0
        ):
            raise _invalid("Field 'expected_duration' must be a positive integer (minutes)")

        profile = self._profiles.require_profile(requester_id)
        if not profile.get("is_requester"):
            raise UnauthorizedError("User is not registered as a requester", {"user_id": requester_id})
        wallet = self._wallets.require_wallet(requester_id)

        split = commission.split(reward_amount, platform.commission_percentage)
        if wallet["balance"] < reward_amount:
            raise InsufficientFundsError(
                "Insufficient wallet balance to post this task",
                {"balance": wallet["balance"], "reward_amount": reward_amount},
            )

        task_id = f"t-{uuid.uuid4()}"
        escrow_id = escrow_id_for(task_id)

        # Funds first: a failed hold leaves nothing behind
        self._wallets.move_to_escrow(
            requester_id,
            reward_amount,
            task_id=task_id,
            tx_type="task_payment",
            description=f"Payment for task: {title}",
        )

        escrow_opened = False
        try:
            self._escrows.open(task_id, requester_id, reward_amount, split.commission_amount)
            escrow_opened = True
            task = self._store.insert(
                TASKS,
                task_id,
                {
                    "task_id": task_id,
                    "requester_id": requester_id,
                    "runner_id": None,
                    "title": title,
                    "description": description,
                    "category": category,
                    "status": "pending",
                    "reward_amount": reward_amount,
                    "commission_amount": split.commission_amount,
                    "runner_amount": split.runner_amount,
                    "pickup_location": pickup_location,
                    "delivery_location": delivery_location,
                    "deadline": deadline,
                    "expected_duration": expected_duration,
                    "escrow_id": escrow_id,
                    "accepted_at": None,
                    "started_at": None,
                    "completed_at": None,
                    "cancelled_at": None,
                    "disputed_at": None,
                    "cancellation_reason": None,
                    "dispute_reason": None,
                },
            )
        except Exception:
            self._logger.error(
                "Task creation failed after funds were held, refunding",
                extra={"task_id": task_id, "requester_id": requester_id, "amount": reward_amount},
            )
            self._compensate_creation(task_id, requester_id, reward_amount, escrow_opened)
            raise

        self._follow_up(
            "count_posted",
            task_id,
            lambda: self._profiles.increment_counter(requester_id, "total_tasks_posted"),
        )
        self._logger.info(
            "Task created",
            extra={
                "task_id": task_id,
                "requester_id": requester_id,
                "reward_amount": reward_amount,
                "commission_amount": split.commission_amount,
            },
        )
        return self._task_to_response(task)

    def _compensate_creation(
        self,
        task_id: str,
        requester_id: str,
        reward_amount: int,
        escrow_opened: bool,
    ) -> None:
        try:
            if escrow_opened:
                self._escrows.close(escrow_id_for(task_id), "refunded")
            self._wallets.refund_from_escrow(
                requester_id,
                reward_amount,
                task_id=task_id,
                tx_type="refund",
                description="Task could not be created, payment returned",
            )
        except Exception:
            self._logger.exception(
                "Failed to refund held funds during task creation rollback",
                extra={"task_id": task_id, "requester_id": requester_id, "amount": reward_amount},
            )

    # ------------------------------------------------------------------
    # Accept / start
    # ------------------------------------------------------------------

    def accept_task(self, task_id: str, runner_id: str) -> dict[str, Any]:
        """
        Assign a runner to a pending task.

        When the platform requires a runner stake, ``runner_amount`` moves
        from the runner's balance into their escrow balance before the
        status changes, and is handed back if the acceptance loses a race.

        Raises:
            ServiceError: TASK_NOT_FOUND, UNAUTHORIZED, INVALID_TRANSITION,
                INSUFFICIENT_FUNDS.
        """
        with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if runner_id == task["requester_id"]:
                raise UnauthorizedError("You cannot accept your own task", {"task_id": task_id})
            self._profiles.require_runner(runner_id)
            self._check_status(task, "accept")

            stake = 0
            if self._platform.runner_stake_required and task["runner_amount"] > 0:
                self._wallets.move_to_escrow(
                    runner_id,
                    task["runner_amount"],
                    task_id=task_id,
                    tx_type="escrow_hold",
                    description=f"Escrow hold for task: {task['title']}",
                )
                stake = task["runner_amount"]

            try:
                updated = self._claim(
                    task,
                    "accepted",
                    {"runner_id": runner_id, "accepted_at": _now_iso()},
                )
            except InvalidTransitionError:
                self._return_stake(task, runner_id, stake)
                raise

            try:
                self._escrows.attach_runner(task["escrow_id"], runner_id, runner_stake=stake)
            except Exception:
                self._logger.error(
                    "Failed to attach runner to escrow, reverting acceptance",
                    extra={"task_id": task_id, "runner_id": runner_id},
                )
                self._restore(task, ("runner_id", "accepted_at"))
                self._return_stake(task, runner_id, stake)
                raise

        self._logger.info(
            "Task accepted",
            extra={"task_id": task_id, "runner_id": runner_id, "stake": stake},
        )
        self._notify(
            task,
            task["requester_id"],
            "task_accepted",
            "Task Accepted",
            f'Your task "{task["title"]}" has been accepted by a runner.',
        )
        return self._task_to_response(updated)

    def _return_stake(self, task: dict[str, Any], runner_id: str, stake: int) -> None:
        if stake <= 0:
            return
        self._wallets.refund_from_escrow(
            runner_id,
            stake,
            task_id=task["task_id"],
            tx_type="escrow_release",
            description=f"Escrow returned for task: {task['title']}",
        )

    def start_task(self, task_id: str, caller_id: str) -> dict[str, Any]:
        """Mark an accepted task as in progress. Only the assigned runner may start it."""
        with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if caller_id != task["runner_id"]:
                raise UnauthorizedError(
                    "Only the assigned runner can start this task",
                    {"task_id": task_id},
                )
            self._check_status(task, "start")
            updated = self._claim(task, "in_progress", {"started_at": _now_iso()})

        self._logger.info("Task started", extra={"task_id": task_id, "runner_id": caller_id})
        self._notify(
            task,
            task["requester_id"],
            "task_started",
            "Task Started",
            f'The runner has started working on "{task["title"]}".',
        )
        return self._task_to_response(updated)

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    def complete_task(self, task_id: str, caller_id: str) -> dict[str, Any]:
        """
        Confirm completion and pay the runner.

        The requester's hold leaves the system and the runner's earning
        lands in their available balance. The platform commission is
        credited to the revenue account when one is configured.

        Raises:
            ServiceError: TASK_NOT_FOUND, UNAUTHORIZED, INVALID_TRANSITION,
                ESCROW_NOT_FOUND, ESCROW_ALREADY_CLOSED.
        """
        with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if caller_id != task["requester_id"]:
                raise UnauthorizedError(
                    "Only the requester can complete this task",
                    {"task_id": task_id},
                )
            self._check_status(task, "complete")
            runner_id = task["runner_id"]
            if not runner_id:
                raise InvalidTransitionError("Task has no runner", {"task_id": task_id})
            escrow = self._escrows.get(task["escrow_id"])
            if escrow is None:
                raise NotFoundError("escrow", {"task_id": task_id})

            updated = self._claim(task, "completed", {"completed_at": _now_iso()})
            try:
                self._escrows.close(escrow["escrow_id"], "released")
            except Exception:
                self._restore(task, ("completed_at",))
                raise

            try:
                self._settle_completion(task, escrow)
            except Exception:
                self._logger.exception(
                    "Escrow released but settlement did not finish",
                    extra={"task_id": task_id, "escrow_id": escrow["escrow_id"]},
                )
                raise

        self._logger.info(
            "Task completed",
            extra={
                "task_id": task_id,
                "runner_id": runner_id,
                "runner_amount": task["runner_amount"],
                "commission_amount": task["commission_amount"],
            },
        )
        self._follow_up(
            "review",
            task_id,
            lambda: self._profiles.record_review(
                task_id,
                task["requester_id"],
                runner_id,
                DEFAULT_REVIEW_RATING,
                DEFAULT_REVIEW_COMMENT,
            ),
        )
        self._follow_up(
            "count_completed",
            task_id,
            lambda: self._profiles.increment_counter(runner_id, "total_tasks_completed"),
        )
        self._notify(
            task,
            runner_id,
            "task_completed",
            "Task Completed",
            f'Task "{task["title"]}" has been completed. '
            f'Payment of {task["runner_amount"]} has been released to your wallet.',
        )
        return self._task_to_response(updated)

    def _settle_completion(self, task: dict[str, Any], escrow: dict[str, Any]) -> None:
        task_id = task["task_id"]
        title = task["title"]
        runner_id = task["runner_id"]
        runner_amount = int(task["runner_amount"])
        stake = int(escrow.get("runner_stake") or 0)

        if stake > 0:
            self._wallets.release_from_escrow(
                runner_id,
                stake,
                credit_to_balance=True,
                task_id=task_id,
                tx_type="task_earning",
                description=f"Earnings from task: {title}",
            )
        elif runner_amount > 0:
            self._wallets.credit(
                runner_id,
                runner_amount,
                tx_type="task_earning",
                description=f"Earnings from task: {title}",
                task_id=task_id,
                count_as_earned=True,
            )

        self._wallets.release_from_escrow(
            task["requester_id"],
            int(task["reward_amount"]),
            credit_to_balance=False,
            task_id=task_id,
            tx_type="escrow_release",
            description=f"Payment released for task: {title}",
            count_as_spent=True,
        )

        revenue_account_id = self._platform.revenue_account_id
        commission_amount = int(task["commission_amount"])
        if revenue_account_id and commission_amount > 0:
            self._wallets.credit(
                revenue_account_id,
                commission_amount,
                tx_type="commission",
                description=f"Commission from task: {title}",
                task_id=task_id,
            )

    # ------------------------------------------------------------------
    # Cancel / dispute
    # ------------------------------------------------------------------

    def cancel_task(self, task_id: str, caller_id: str, reason: str | None = None) -> dict[str, Any]:
        """
        Cancel a task that has not finished and return every hold.

        The requester gets the full reward back; a runner who staked
        ``runner_amount`` at acceptance gets the stake back.

        Raises:
            ServiceError: TASK_NOT_FOUND, UNAUTHORIZED, INVALID_TRANSITION,
                ESCROW_NOT_FOUND, ESCROW_ALREADY_CLOSED.
        """
        cancellation_reason = _parse_reason(reason, required=False)
        with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if caller_id not in (task["requester_id"], task["runner_id"]):
                raise UnauthorizedError(
                    "Only the requester or the assigned runner can cancel this task",
                    {"task_id": task_id},
                )
            self._check_status(task, "cancel")
            escrow = self._escrows.get(task["escrow_id"])
            if escrow is None:
                raise NotFoundError("escrow", {"task_id": task_id})

            updated = self._claim(
                task,
                "cancelled",
                {"cancelled_at": _now_iso(), "cancellation_reason": cancellation_reason},
            )
            try:
                self._escrows.close(escrow["escrow_id"], "refunded")
            except Exception:
                self._restore(task, ("cancelled_at", "cancellation_reason"))
                raise

            try:
                self._wallets.refund_from_escrow(
                    task["requester_id"],
                    int(task["reward_amount"]),
                    task_id=task_id,
                    tx_type="refund",
                    description=f"Refund for cancelled task: {task['title']}",
                )
                stake = int(escrow.get("runner_stake") or 0)
                if task["runner_id"] and stake > 0:
                    self._return_stake(task, task["runner_id"], stake)
            except Exception:
                self._logger.exception(
                    "Escrow refunded but wallet refund did not finish",
                    extra={"task_id": task_id, "escrow_id": escrow["escrow_id"]},
                )
                raise

        self._logger.info(
            "Task cancelled",
            extra={"task_id": task_id, "cancelled_by": caller_id, "previous_status": task["status"]},
        )
        for party in (task["requester_id"], task["runner_id"]):
            if party:
                self._notify(
                    task,
                    party,
                    "task_cancelled",
                    "Task Cancelled",
                    f'Task "{task["title"]}" has been cancelled.',
                )
        return self._task_to_response(updated)

    def dispute_task(self, task_id: str, caller_id: str, reason: str) -> dict[str, Any]:
        """
        Flag an accepted or in-progress task for resolution.

        Funds stay in escrow; resolution happens outside this service.
        """
        dispute_reason = _parse_reason(reason, required=True)
        with self._locks.hold(task_id):
            task = self._require_task(task_id)
            if caller_id not in (task["requester_id"], task["runner_id"]):
                raise UnauthorizedError(
                    "Only the requester or the assigned runner can dispute this task",
                    {"task_id": task_id},
                )
            self._check_status(task, "dispute")
            updated = self._claim(
                task,
                "disputed",
                {"disputed_at": _now_iso(), "dispute_reason": dispute_reason},
            )

        self._logger.info("Task disputed", extra={"task_id": task_id, "disputed_by": caller_id})
        other_party = task["runner_id"] if caller_id == task["requester_id"] else task["requester_id"]
        self._notify(
            task,
            other_party,
            "task_disputed",
            "Task Disputed",
            f'Task "{task["title"]}" has been disputed.',
        )
        return self._task_to_response(updated)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> dict[str, Any]:
        """
        Get a single task by ID.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        return self._task_to_response(self._require_task(task_id))

    def list_tasks(
        self,
        status: str | None = None,
        requester_id: str | None = None,
        runner_id: str | None = None,
        category: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks newest first. All filters use AND logic."""
        if status is not None and status not in VALID_STATUSES:
            raise _invalid(f"status must be one of {sorted(VALID_STATUSES)}")
        filters: list[Filter] = []
        if status is not None:
            filters.append(("status", "==", status))
        if requester_id is not None:
            filters.append(("requester_id", "==", requester_id))
        if runner_id is not None:
            filters.append(("runner_id", "==", runner_id))
        if category is not None:
            filters.append(("category", "==", category))
        tasks = self._store.query(
            TASKS,
            filters,
            order_by="created_at",
            descending=True,
            limit=limit,
            offset=offset,
        )
        return [self._task_to_response(task) for task in tasks]

    def get_escrow_for_task(self, task_id: str, caller_id: str) -> dict[str, Any]:
        """Escrow record of a task, visible to its requester and runner only."""
        task = self._require_task(task_id)
        if caller_id not in (task["requester_id"], task["runner_id"]):
            raise UnauthorizedError(
                "Only the parties to a task can view its escrow",
                {"task_id": task_id},
            )
        escrow = self._escrows.get(task["escrow_id"])
        if escrow is None:
            raise NotFoundError("escrow", {"task_id": task_id})
        return escrow

    def get_stats(self) -> dict[str, Any]:
        by_status = {
            status: self._store.count(TASKS, [("status", "==", status)])
            for status in sorted(VALID_STATUSES)
        }
        return {"total_tasks": sum(by_status.values()), "tasks_by_status": by_status}
