"""
Tip split arithmetic.

All amounts are integer minor units (sats). Shares are whole percentages.
Each leg is floored and the remainder goes to the first-listed recipient, so
the legs always sum exactly to the tip.
"""
from typing import List, Optional, Sequence, Tuple

from forwarding_engine.core.errors import PaymentValidationError
from forwarding_engine.core.records import TipLeg


def compute_tip_amount(base_amount: int, tip_percent: int) -> int:
    """
    Compute a percentage tip on top of a base amount.

    Args:
        base_amount: Base amount in sats
        tip_percent: Whole tip percentage (0-100)

    Returns:
        int: Floored tip amount

    Raises:
        PaymentValidationError: If the percentage is out of range
    """
    if tip_percent < 0 or tip_percent > 100:
        raise PaymentValidationError("Tip percent must be between 0 and 100")
    return base_amount * tip_percent // 100


def equal_shares(count: int) -> List[int]:
    """Split 100% into ``count`` whole shares, remainder to the first."""
    if count <= 0:
        return []
    share, remainder = divmod(100, count)
    shares = [share] * count
    shares[0] += remainder
    return shares


def split_tip(
    tip_amount: int,
    recipients: Sequence[Tuple[str, Optional[int]]],
) -> List[TipLeg]:
    """
    Split a tip across recipients by percentage share.

    Args:
        tip_amount: Total tip in sats
        recipients: Ordered (destination, share_percent) pairs. When every share
            is None the tip is split equally.

    Returns:
        List[TipLeg]: One leg per recipient, amounts summing to tip_amount

    Raises:
        PaymentValidationError: If shares are mixed, out of range or do not sum to 100

    Example:
        >>> [leg.amount for leg in split_tip(10, [("a", 34), ("b", 33), ("c", 33)])]
        [4, 3, 3]
    """
    if not recipients:
        return []

    shares = [share for _, share in recipients]
    if all(share is None for share in shares):
        resolved = equal_shares(len(recipients))
    elif any(share is None for share in shares):
        raise PaymentValidationError("Either all recipients or none must specify a share")
    else:
        resolved = [int(share) for share in shares]  # type: ignore[arg-type]

    if any(share < 1 or share > 100 for share in resolved):
        raise PaymentValidationError("Recipient shares must be between 1 and 100")
    if sum(resolved) != 100:
        raise PaymentValidationError("Recipient shares must sum to 100")

    amounts = [tip_amount * share // 100 for share in resolved]
    amounts[0] += tip_amount - sum(amounts)

    return [
        TipLeg(position=i, destination=destination, share_percent=share, amount=amount)
        for i, ((destination, _), share, amount) in enumerate(zip(recipients, resolved, amounts))
    ]
