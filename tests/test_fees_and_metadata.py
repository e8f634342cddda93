"""
Fee Calculation and Payment Metadata Tests
"""

from decimal import Decimal

import pytest

from config import Config
from models import PaymentMethod
from utils.escrow_metadata import (
    FullEscrowMetadata, MilestoneEscrowMetadata, decode_metadata, encode_metadata, is_milestone_payment
)
from utils.exception_handler import ValidationError
from utils.fee_calculator import FeeCalculator


class TestFeeCalculator:
    """Mobile money fees on integer amounts"""

    @pytest.mark.parametrize("amount,expected_fee", [
        (10000, 150),
        (1000, 15),
        (100, 2),  # 1.5 rounds half-up
        (33, 0),  # 0.495 rounds down
        (1, 0),
        (2500000, 37500),
    ])
    def test_fee_rounding(self, amount, expected_fee):
        assert FeeCalculator.calculate_fee(amount, PaymentMethod.ORANGE_MONEY) == expected_fee

    @pytest.mark.parametrize("method", [PaymentMethod.MTN_MONEY, PaymentMethod.ORANGE_MONEY, PaymentMethod.MOOV_MONEY])
    def test_fee_bearing_methods(self, method):
        assert method.is_fee_bearing
        fee, net = FeeCalculator.calculate_fee_breakdown(7777, method)
        assert fee + net == 7777
        assert fee == 117

    @pytest.mark.parametrize("method", [PaymentMethod.WAVE, PaymentMethod.CASH, PaymentMethod.BANK_TRANSFER, PaymentMethod.CRYPTO])
    def test_fee_free_methods(self, method):
        assert FeeCalculator.calculate_fee_breakdown(7777, method) == (0, 7777)

    def test_configured_percentage(self, monkeypatch):
        monkeypatch.setattr(Config, "MOBILE_MONEY_FEE_PERCENTAGE", Decimal("2"))
        assert FeeCalculator.calculate_fee(10000, PaymentMethod.MTN_MONEY) == 200

    def test_describe_fee(self):
        summary = FeeCalculator.describe_fee(10000, PaymentMethod.MOOV_MONEY)
        assert summary["fee_amount"] == 150
        assert summary["net_amount"] == 9850
        assert summary["currency"] == Config.SETTLEMENT_CURRENCY
        assert FeeCalculator.describe_fee(10000, PaymentMethod.WAVE)["fee_percentage"] == Decimal("0")


class TestEscrowMetadata:
    """Closed, versioned metadata variants"""

    def test_full_escrow_encoding(self):
        encoded = encode_metadata(FullEscrowMetadata(description="Paint fence"))
        assert encoded == {"version": 1, "escrow_type": "full", "description": "Paint fence"}
        assert decode_metadata(encoded) == FullEscrowMetadata(description="Paint fence")

    def test_milestone_encoding(self):
        encoded = encode_metadata(MilestoneEscrowMetadata(milestone_id="MS-9"))
        assert encoded == {"version": 1, "escrow_type": "milestone", "milestone_id": "MS-9"}
        assert is_milestone_payment(decode_metadata(encoded))
        assert not is_milestone_payment(FullEscrowMetadata())

    def test_none_passthrough(self):
        assert encode_metadata(None) is None
        assert decode_metadata(None) is None

    @pytest.mark.parametrize("payload", [
        {"version": 1, "escrow_type": "subscription"},
        {"version": 2, "escrow_type": "full"},
        {"escrow_type": "full"},
        {"version": 1, "escrow_type": "milestone"},
        ["not", "an", "object"],
    ])
    def test_rejects_unknown_shapes(self, payload):
        with pytest.raises(ValidationError):
            decode_metadata(payload)
