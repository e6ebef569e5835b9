"""Commission split between the platform and the runner."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from errand_ledger_service.exceptions import InvalidAmountError, InvalidSettingsError


@dataclass(frozen=True)
class CommissionSplit:
    """Platform commission and runner payout for one reward."""

    commission_amount: int
    runner_amount: int

    @property
    def reward_amount(self) -> int:
        return self.commission_amount + self.runner_amount


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def split(reward_amount: int, commission_percentage: float) -> CommissionSplit:
    """
    Split a reward into commission and runner payout.

    Commission is ``reward * percentage / 100`` rounded half-up to a whole
    unit using decimal arithmetic; the runner gets the remainder, so the
    two parts always sum to the reward exactly.

    Raises:
        InvalidSettingsError: percentage is not a number in [0, 100].
        InvalidAmountError: reward is not a non-negative integer.
    """
    if isinstance(commission_percentage, bool) or not isinstance(commission_percentage, (int, float)):
        raise InvalidSettingsError("Commission percentage must be a number")
    try:
        percentage = Decimal(str(commission_percentage))
    except InvalidOperation as exc:
        raise InvalidSettingsError("Commission percentage must be a number") from exc
    if not percentage.is_finite() or percentage < 0 or percentage > 100:
        raise InvalidSettingsError(
            "Commission percentage must be between 0 and 100",
            {"commission_percentage": commission_percentage},
        )

    if not _is_int(reward_amount) or reward_amount < 0:
        raise InvalidAmountError("Reward amount must be a non-negative integer")

    commission = (Decimal(reward_amount) * percentage / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    commission_amount = int(commission)
    return CommissionSplit(
        commission_amount=commission_amount,
        runner_amount=reward_amount - commission_amount,
    )


def validate_task_amount(reward_amount: object, minimum: int, maximum: int) -> int:
    """
    Check a reward against the platform's allowed range.

    Returns:
        The reward as an int.

    Raises:
        InvalidSettingsError: minimum exceeds maximum.
        InvalidAmountError: reward is not a positive integer or is out of range.
    """
    if minimum > maximum:
        raise InvalidSettingsError(
            "Minimum task amount exceeds maximum task amount",
            {"minimum_task_amount": minimum, "maximum_task_amount": maximum},
        )
    if not _is_int(reward_amount) or reward_amount <= 0:  # type: ignore[operator]
        raise InvalidAmountError("Reward amount must be a positive integer")
    amount = int(reward_amount)  # type: ignore[call-overload]
    if amount < minimum or amount > maximum:
        raise InvalidAmountError(
            f"Reward amount must be between {minimum} and {maximum}",
            {"minimum_task_amount": minimum, "maximum_task_amount": maximum},
        )
    return amount
