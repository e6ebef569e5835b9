"""User profiles, reviews and ratings."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from errand_ledger_service.exceptions import NotFoundError, ServiceError, UnauthorizedError
from errand_ledger_service.logging import get_logger
from errand_ledger_service.services.ledger_store import (
    DuplicateDocumentError,
    VersionConflictError,
)
from errand_ledger_service.services.locks import KeyedLocks

if TYPE_CHECKING:
    from errand_ledger_service.services.ledger_store import LedgerStore
    from errand_ledger_service.services.wallet_ledger import WalletLedger

USERS = "users"
REVIEWS = "reviews"

DEFAULT_RATING = 5.0
_COUNTERS = frozenset({"total_tasks_completed", "total_tasks_posted"})
_MAX_WRITE_ATTEMPTS = 5


class ProfileRegistry:
    """
    Marketplace profile of each user.

    Identity is owned elsewhere; this keeps the roles, counters and
    rating the task lifecycle needs, and creates the user's wallet on
    onboarding.
    """

    def __init__(self, store: LedgerStore, wallets: WalletLedger) -> None:
        self._store = store
        self._wallets = wallets
        self._locks = KeyedLocks()
        self._logger = get_logger(__name__)

    def register_user(
        self,
        user_id: str,
        full_name: str,
        *,
        is_runner: bool,
        is_requester: bool,
        email: str | None = None,
        phone: str | None = None,
    ) -> dict[str, Any]:
        """
        Onboard a user: store the profile and create the empty wallet.

        Raises:
            ServiceError: USER_EXISTS if the profile already exists.
        """
        try:
            profile = self._store.insert(
                USERS,
                user_id,
                {
                    "user_id": user_id,
                    "full_name": full_name,
                    "email": email,
                    "phone": phone,
                    "is_runner": is_runner,
                    "is_requester": is_requester,
                    "rating": DEFAULT_RATING,
                    "total_tasks_completed": 0,
                    "total_tasks_posted": 0,
                },
            )
        except DuplicateDocumentError as exc:
            raise ServiceError("USER_EXISTS", "User is already registered", 409, {}) from exc

        try:
            self._wallets.create_wallet(user_id)
        except ServiceError as exc:
            # A wallet left over from an interrupted onboarding is reused
            if exc.error != "WALLET_EXISTS":
                raise
        self._logger.info(
            "User registered",
            extra={"user_id": user_id, "is_runner": is_runner, "is_requester": is_requester},
        )
        return profile

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        return self._store.get(USERS, user_id)

    def require_profile(self, user_id: str) -> dict[str, Any]:
        profile = self.get_profile(user_id)
        if profile is None:
            raise NotFoundError("user", {"user_id": user_id})
        return profile

    def require_runner(self, user_id: str) -> dict[str, Any]:
        """Return the profile of a user allowed to accept tasks."""
        profile = self.require_profile(user_id)
        if not profile.get("is_runner"):
            raise UnauthorizedError(
                "User is not registered as a runner",
                {"user_id": user_id},
            )
        return profile

    def _update(self, user_id: str, compute: Any) -> dict[str, Any]:
        with self._locks.hold(user_id):
            for _ in range(_MAX_WRITE_ATTEMPTS):
                profile = self.require_profile(user_id)
                try:
                    return self._store.put(
                        USERS,
                        user_id,
                        compute(profile),
                        merge=True,
                        expected_version=profile["version"],
                    )
                except VersionConflictError:
                    continue
        raise ServiceError("PROFILE_BUSY", "Profile is being modified concurrently", 409, {})

    def increment_counter(self, user_id: str, field: str) -> dict[str, Any]:
        if field not in _COUNTERS:
            msg = f"Unknown profile counter: {field}"
            raise ValueError(msg)
        return self._update(user_id, lambda profile: {field: int(profile.get(field, 0)) + 1})

    def record_review(
        self,
        task_id: str,
        reviewer_id: str,
        reviewee_id: str,
        rating: int,
        comment: str,
    ) -> dict[str, Any]:
        """
        Store a 1-5 star review and refresh the reviewee's rating.

        Raises:
            ServiceError: INVALID_RATING, REVIEW_EXISTS.
        """
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise ServiceError("INVALID_RATING", "Rating must be an integer from 1 to 5", 400, {})
        review_id = f"rev-{task_id}-{reviewer_id}"
        try:
            review = self._store.insert(
                REVIEWS,
                review_id,
                {
                    "review_id": review_id,
                    "task_id": task_id,
                    "reviewer_id": reviewer_id,
                    "reviewee_id": reviewee_id,
                    "rating": rating,
                    "comment": comment,
                },
            )
        except DuplicateDocumentError as exc:
            raise ServiceError(
                "REVIEW_EXISTS",
                "This task has already been reviewed by this user",
                409,
                {"task_id": task_id},
            ) from exc
        self.recompute_rating(reviewee_id)
        return review

    def list_reviews(self, user_id: str) -> list[dict[str, Any]]:
        return self._store.query(
            REVIEWS,
            [("reviewee_id", "==", user_id)],
            order_by="created_at",
            descending=True,
        )

    def recompute_rating(self, user_id: str) -> float:
        """Average review rating rounded to one decimal, 5.0 with no reviews."""
        ratings = [int(r["rating"]) for r in self._store.query(REVIEWS, [("reviewee_id", "==", user_id)])]
        if ratings:
            mean = Decimal(sum(ratings)) / Decimal(len(ratings))
            rating = float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
        else:
            rating = DEFAULT_RATING
        self._update(user_id, lambda _profile: {"rating": rating})
        return rating
