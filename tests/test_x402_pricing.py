# tests/test_x402_pricing.py
"""
Unit tests for x402 payment requirements.
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from paywall.services.custody import WalletInfo
from paywall.x402.errors import ConfigurationError
from paywall.x402.pricing import (
    ASSETS,
    PaymentRequirementsRegistry,
    format_amount,
    get_asset,
    parse_price,
    resolve_amount,
)
from paywall.x402.wallet_cache import WalletCache

from conftest import NETWORK, PAY_TO


class TestParsePrice:
    """Test human price conversion."""

    def test_dollar_string(self):
        """'$0.01' with 6 decimals is 10000 units."""
        assert parse_price("$0.01", 6) == 10000

    def test_plain_string(self):
        """Prices without '$' are accepted."""
        assert parse_price("0.01", 6) == 10000
        assert parse_price("1", 6) == 1_000_000

    def test_decimal(self):
        """Decimal prices are accepted."""
        assert parse_price(Decimal("0.25"), 6) == 250000

    def test_int_is_smallest_units(self):
        """Integers are already in smallest units."""
        assert parse_price(10000, 6) == 10000

    def test_zero(self):
        """Free is a valid price."""
        assert parse_price("$0", 6) == 0

    def test_negative_rejected(self):
        """Negative prices are a configuration error."""
        with pytest.raises(ConfigurationError):
            parse_price("-0.01", 6)
        with pytest.raises(ConfigurationError):
            parse_price(-1, 6)

    def test_too_precise_rejected(self):
        """Sub-unit prices cannot be represented."""
        with pytest.raises(ConfigurationError):
            parse_price("0.0000001", 6)

    def test_garbage_rejected(self):
        """Unparseable prices are a configuration error."""
        with pytest.raises(ConfigurationError):
            parse_price("ten cents", 6)


class TestResolveAmount:
    """Test the single amount resolution rule."""

    def test_amount_wins(self):
        """'amount' takes precedence over everything else."""
        assert resolve_amount({"amount": "5", "maxAmountRequired": "7", "price": "$1"}, 6) == 5

    def test_max_amount_required_before_price(self):
        """'maxAmountRequired' takes precedence over 'price'."""
        assert resolve_amount({"maxAmountRequired": "7", "price": "$1"}, 6) == 7

    def test_price_last(self):
        """'price' is converted with the asset's decimals."""
        assert resolve_amount({"price": "$0.01"}, 6) == 10000

    def test_non_integer_amount_rejected(self):
        """'amount' must be in smallest units."""
        with pytest.raises(ConfigurationError):
            resolve_amount({"amount": "0.01"}, 6)

    def test_nothing_to_resolve(self):
        """A requirement without any amount field is rejected."""
        with pytest.raises(ConfigurationError):
            resolve_amount({}, 6)


class TestFormatAmount:
    """Test smallest-unit rendering."""

    def test_format(self):
        """Amounts render without trailing zeros."""
        assert format_amount(10000, 6) == "0.01"
        assert format_amount(1_000_000, 6) == "1"
        assert format_amount(0, 6) == "0"


class TestAssets:
    """Test the asset table."""

    def test_arc_usdc_uses_erc20_precision(self):
        """Arc USDC is priced with the 6-decimal ERC-20 interface."""
        asset = get_asset("eip155:5042002")
        assert asset.decimals == 6
        assert asset.address == "0x3600000000000000000000000000000000000000"

    def test_all_assets_have_signing_domain(self):
        """Every asset carries EIP-712 domain name and version."""
        for asset in ASSETS.values():
            assert asset.eip712_name
            assert asset.eip712_version

    def test_unknown_network(self):
        """Unknown networks are a configuration error."""
        with pytest.raises(ConfigurationError):
            get_asset("eip155:1")


class TestPaymentRequirementsRegistry:
    """Test requirement construction."""

    def test_one_cent_is_10000_units(self, registry):
        """A $0.01 resource is offered for exactly 10000 units."""
        accepts = registry.requirements_for("premium", "$0.01")

        assert len(accepts) == 1
        assert accepts[0].amount == "10000"
        assert accepts[0].scheme == "exact"
        assert accepts[0].network == NETWORK

    def test_requirement_fields(self, registry):
        """Requirement carries payee, asset, timeout and signing domain."""
        requirement = registry.requirements_for("premium", "$0.01")[0]

        assert requirement.pay_to == PAY_TO
        assert requirement.asset.lower() == ASSETS[NETWORK].address.lower()
        assert requirement.max_timeout_seconds == 300
        assert requirement.extra == {"name": "USDC", "version": "2"}

    def test_repeatable(self, registry):
        """Repeated calls return equal requirements."""
        assert registry.requirements_for("a", "$0.01") == registry.requirements_for("a", "$0.01")

    def test_payee_from_wallet_cache(self):
        """Without a pinned address the merchant wallet is the payee."""
        directory = MagicMock()
        directory.get_wallet.return_value = WalletInfo(id="w1", address=PAY_TO.lower())
        cache = WalletCache(directory, "w1")
        registry = PaymentRequirementsRegistry(network=NETWORK, wallet_cache=cache, max_timeout_seconds=300)

        requirement = registry.requirements_for("premium", "$0.01")[0]

        assert requirement.pay_to == PAY_TO
        directory.get_wallet.assert_called_once_with("w1")

    def test_no_payee_is_configuration_error(self):
        """No pinned address and no wallet: no requirement can be built."""
        registry = PaymentRequirementsRegistry(network=NETWORK, max_timeout_seconds=300)
        with pytest.raises(ConfigurationError):
            registry.requirements_for("premium", "$0.01")

    def test_invalid_payee(self):
        """A pinned payee must be an address."""
        registry = PaymentRequirementsRegistry(network=NETWORK, pay_to="merchant", max_timeout_seconds=300)
        with pytest.raises(ConfigurationError):
            registry.requirements_for("premium", "$0.01")
