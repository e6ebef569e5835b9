"""Unit tests for profiles, reviews and the notification outbox."""

from __future__ import annotations

import pytest

from errand_ledger_service.exceptions import ServiceError, UnauthorizedError

pytestmark = pytest.mark.unit


class TestProfiles:
    def test_register_creates_profile_and_wallet(self, market):
        profile = market.profiles.register_user(
            "ada", "Ada Obi", is_runner=True, is_requester=False, email="ada@example.com"
        )
        assert profile["rating"] == 5.0
        assert profile["total_tasks_posted"] == 0
        assert profile["email"] == "ada@example.com"
        assert profile["phone"] is None
        assert market.wallet("ada")["balance"] == 0

    def test_register_twice(self, market):
        market.profiles.register_user("ada", "Ada Obi", is_runner=True, is_requester=True)
        with pytest.raises(ServiceError) as exc_info:
            market.profiles.register_user("ada", "Ada Obi", is_runner=True, is_requester=True)
        assert exc_info.value.error == "USER_EXISTS"

    def test_register_reuses_leftover_wallet(self, market):
        market.wallets.create_wallet("ada")
        market.wallets.deposit("ada", 300, "internal")
        market.profiles.register_user("ada", "Ada Obi", is_runner=True, is_requester=True)
        assert market.wallet("ada")["balance"] == 300

    def test_require_runner(self, market):
        market.profiles.register_user("ada", "Ada Obi", is_runner=False, is_requester=True)
        with pytest.raises(UnauthorizedError):
            market.profiles.require_runner("ada")
        with pytest.raises(ServiceError) as exc_info:
            market.profiles.require_runner("nobody")
        assert exc_info.value.error == "USER_NOT_FOUND"

    def test_increment_counter(self, market):
        market.profiles.register_user("ada", "Ada Obi", is_runner=True, is_requester=True)
        market.profiles.increment_counter("ada", "total_tasks_completed")
        updated = market.profiles.increment_counter("ada", "total_tasks_completed")
        assert updated["total_tasks_completed"] == 2
        with pytest.raises(ValueError, match="Unknown profile counter"):
            market.profiles.increment_counter("ada", "rating")


class TestReviews:
    @pytest.fixture(autouse=True)
    def _users(self, market):
        for user_id in ("ada", "bola", "chi"):
            market.profiles.register_user(user_id, user_id.title(), is_runner=True, is_requester=True)

    def test_rating_is_rounded_mean(self, market):
        market.profiles.record_review("t1", "bola", "ada", 5, "Great")
        market.profiles.record_review("t2", "chi", "ada", 4, "Good")
        market.profiles.record_review("t3", "bola", "ada", 4, "Fine")
        # 13 / 3 = 4.333...
        assert market.profiles.get_profile("ada")["rating"] == 4.3
        assert len(market.profiles.list_reviews("ada")) == 3

    def test_half_rounds_up(self, market):
        market.profiles.record_review("t1", "bola", "ada", 5, "Great")
        market.profiles.record_review("t2", "chi", "ada", 4, "Good")
        assert market.profiles.get_profile("ada")["rating"] == 4.5

    def test_no_reviews_keeps_default(self, market):
        assert market.profiles.recompute_rating("ada") == 5.0

    def test_one_review_per_task_and_reviewer(self, market):
        market.profiles.record_review("t1", "bola", "ada", 5, "Great")
        with pytest.raises(ServiceError) as exc_info:
            market.profiles.record_review("t1", "bola", "ada", 1, "Changed my mind")
        assert exc_info.value.error == "REVIEW_EXISTS"

    @pytest.mark.parametrize("rating", [0, 6, 4.5, True])
    def test_rating_bounds(self, market, rating):
        with pytest.raises(ServiceError) as exc_info:
            market.profiles.record_review("t1", "bola", "ada", rating, "")
        assert exc_info.value.error == "INVALID_RATING"


class TestNotifications:
    def test_notifications_listed_newest_first(self, market):
        market.notifications.notify("ada", "deposit_completed", "Deposit Successful", "500 added.")
        market.notifications.notify("ada", "task_accepted", "Task Accepted", "Accepted.", {"task_id": "t1"})
        market.notifications.notify("bola", "task_started", "Task Started", "Started.")

        notes = market.notifications.list_for_user("ada")
        assert [n["type"] for n in notes] == ["task_accepted", "deposit_completed"]
        assert notes[0]["data"] == {"task_id": "t1"}
        assert notes[1]["data"] == {}
        assert notes[0]["read"] is False
        assert notes[0]["notification_id"].startswith("ntf-")

    def test_unknown_type_rejected(self, market):
        with pytest.raises(ValueError, match="Unknown notification type"):
            market.notifications.notify("ada", "promo", "Sale", "Everything must go")
        assert market.notifications.list_for_user("ada") == []
