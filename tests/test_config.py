"""
Configuration Tests
"""

from decimal import Decimal

from config import Config


class TestConfig:
    """Environment-driven settings"""

    def test_defaults(self):
        assert Config.SETTLEMENT_CURRENCY == "FCFA"
        assert isinstance(Config.MOBILE_MONEY_FEE_PERCENTAGE, Decimal)
        assert Config.LEDGER_WRITE_MAX_ATTEMPTS >= 1

    def test_fee_percentage_out_of_range_falls_back(self, monkeypatch):
        monkeypatch.setenv("TEST_FEE_PERCENTAGE", "45")
        assert Config._validate_fee_percentage("TEST_FEE_PERCENTAGE", "1.5", 0.0, 20.0) == Decimal("1.5")

    def test_fee_percentage_garbage_falls_back(self, monkeypatch):
        monkeypatch.setenv("TEST_FEE_PERCENTAGE", "lots")
        assert Config._validate_fee_percentage("TEST_FEE_PERCENTAGE", "1.5") == Decimal("1.5")

    def test_fee_percentage_valid(self, monkeypatch):
        monkeypatch.setenv("TEST_FEE_PERCENTAGE", "2.25")
        assert Config._validate_fee_percentage("TEST_FEE_PERCENTAGE") == Decimal("2.25")

    def test_validate_configuration_reports_problems(self, monkeypatch):
        monkeypatch.setattr(Config, "LEDGER_WRITE_MAX_ATTEMPTS", 0)
        monkeypatch.setattr(Config, "CASH_PAYMENT_MIN_TRUST_SCORE", 150)
        problems = Config.validate_configuration()
        assert "LEDGER_WRITE_MAX_ATTEMPTS must be at least 1" in problems
        assert "CASH_PAYMENT_MIN_TRUST_SCORE must be between 0 and 100" in problems
