"""
Unit tests for tip split arithmetic.
"""
import pytest

from forwarding_engine.core.errors import PaymentValidationError
from forwarding_engine.core.split import compute_tip_amount, equal_shares, split_tip


class TestSplitTip:
    """Test suite for split_tip."""

    @pytest.mark.unit
    def test_explicit_shares_floor_with_remainder_to_first(self) -> None:
        """10 sats at 34/33/33 yields 4/3/3."""
        legs = split_tip(10, [("a", 34), ("b", 33), ("c", 33)])

        assert [leg.amount for leg in legs] == [4, 3, 3]
        assert [leg.position for leg in legs] == [0, 1, 2]
        assert [leg.leg_name for leg in legs] == ["tip:0", "tip:1", "tip:2"]

    @pytest.mark.unit
    def test_single_recipient_takes_whole_tip(self) -> None:
        legs = split_tip(10, [("tip-wallet", None)])

        assert len(legs) == 1
        assert legs[0].amount == 10
        assert legs[0].share_percent == 100

    @pytest.mark.unit
    def test_omitted_shares_split_equally(self) -> None:
        legs = split_tip(10, [("a", None), ("b", None), ("c", None)])

        assert [leg.share_percent for leg in legs] == [34, 33, 33]
        assert [leg.amount for leg in legs] == [4, 3, 3]

    @pytest.mark.unit
    def test_remainder_goes_to_first_listed(self) -> None:
        legs = split_tip(7, [("a", 50), ("b", 50)])

        assert [leg.amount for leg in legs] == [4, 3]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "tip_amount,shares",
        [
            (1, [50, 50]),
            (99, [10, 20, 30, 40]),
            (1001, [33, 33, 34]),
            (123456, [1, 99]),
        ],
    )
    def test_legs_always_sum_to_tip(self, tip_amount: int, shares: list) -> None:
        legs = split_tip(tip_amount, [(f"r{i}", share) for i, share in enumerate(shares)])

        assert sum(leg.amount for leg in legs) == tip_amount
        assert all(leg.amount >= 0 for leg in legs)

    @pytest.mark.unit
    def test_zero_tip_produces_zero_legs(self) -> None:
        legs = split_tip(0, [("a", 50), ("b", 50)])

        assert [leg.amount for leg in legs] == [0, 0]

    @pytest.mark.unit
    def test_no_recipients(self) -> None:
        assert split_tip(0, []) == []

    @pytest.mark.unit
    def test_shares_must_sum_to_100(self) -> None:
        with pytest.raises(PaymentValidationError, match="sum to 100"):
            split_tip(10, [("a", 50), ("b", 40)])

    @pytest.mark.unit
    def test_mixed_shares_rejected(self) -> None:
        with pytest.raises(PaymentValidationError, match="all recipients or none"):
            split_tip(10, [("a", 50), ("b", None)])

    @pytest.mark.unit
    def test_share_out_of_range_rejected(self) -> None:
        with pytest.raises(PaymentValidationError, match="between 1 and 100"):
            split_tip(10, [("a", 0), ("b", 100)])


class TestTipAmount:
    """Test suite for percentage tips."""

    @pytest.mark.unit
    def test_percentage_is_floored(self) -> None:
        assert compute_tip_amount(1000, 15) == 150
        assert compute_tip_amount(99, 10) == 9

    @pytest.mark.unit
    def test_percentage_out_of_range(self) -> None:
        with pytest.raises(PaymentValidationError):
            compute_tip_amount(1000, 101)

    @pytest.mark.unit
    def test_equal_shares(self) -> None:
        assert equal_shares(3) == [34, 33, 33]
        assert equal_shares(4) == [25, 25, 25, 25]
        assert equal_shares(0) == []
