# paywall/x402/pricing.py
"""
Payment requirements for x402 challenges.

This module turns a resource and a price into the list of payment methods
the server accepts:
1. Look up the asset for the configured network (fixed decimal precision
   and EIP-712 domain metadata, never discovered on-chain)
2. Convert a human price ("$0.01") into the asset's smallest unit
3. Resolve the payee (pinned address, or the merchant custodial wallet)
4. Attach the validity window and signing-domain metadata

Configuration is loaded from paywall/core/config.py:
- X402_NETWORK: CAIP-2 network id
- X402_PAY_TO_ADDRESS: pinned payee address (optional)
- X402_MAX_TIMEOUT_SECONDS: upper bound on authorization lifetime
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Union

from eth_utils import is_hex_address, to_checksum_address

from paywall.core.config import settings
from paywall.x402.errors import ConfigurationError
from paywall.x402.models import EXACT_SCHEME, PaymentRequirements, is_uint_string
from paywall.x402.wallet_cache import WalletCache

logger = logging.getLogger(__name__)

PriceSpec = Union[int, str, Decimal]


@dataclass(frozen=True)
class AssetInfo:
    """A fungible token deployment on one network."""
    symbol: str
    address: str
    decimals: int
    eip712_name: str
    eip712_version: str


# USDC deployments by network. The ERC-20 interface of USDC uses 6 decimals
# everywhere, including Arc where native gas USDC uses 18; prices are always
# expressed against the ERC-20 precision.
ASSETS: Dict[str, AssetInfo] = {
    "eip155:5042002": AssetInfo(
        symbol="USDC",
        address="0x3600000000000000000000000000000000000000",
        decimals=6,
        eip712_name="USDC",
        eip712_version="2",
    ),
    "eip155:84532": AssetInfo(
        symbol="USDC",
        address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        decimals=6,
        eip712_name="USDC",
        eip712_version="2",
    ),
    "eip155:8453": AssetInfo(
        symbol="USDC",
        address="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        decimals=6,
        eip712_name="USD Coin",
        eip712_version="2",
    ),
}


def get_asset(network: str) -> AssetInfo:
    """
    Return the settlement asset for a network.

    Raises:
        ConfigurationError: If the network has no known asset.
    """
    try:
        return ASSETS[network]
    except KeyError:
        raise ConfigurationError(f"No settlement asset configured for network {network}")


def parse_price(price: PriceSpec, decimals: int) -> int:
    """
    Convert a price into the asset's smallest unit.

    Integers are taken as already being in the smallest unit. Strings and
    Decimals are human amounts, optionally prefixed with "$".

    Args:
        price: 10000, "$0.01", "0.01" or Decimal("0.01")
        decimals: The asset's fixed decimal precision

    Returns:
        Non-negative integer amount

    Raises:
        ConfigurationError: If the price is negative, unparseable, or has more
            precision than the asset can represent.
    """
    if isinstance(price, bool):
        raise ConfigurationError(f"Invalid price: {price!r}")

    if isinstance(price, int):
        if price < 0:
            raise ConfigurationError(f"Price must not be negative, got {price}")
        return price

    if isinstance(price, str):
        text = price.strip().replace(",", "")
        if text.startswith("$"):
            text = text[1:].strip()
        try:
            amount = Decimal(text)
        except InvalidOperation as e:
            raise ConfigurationError(f"Price must be a decimal number, got '{price}'") from e
    elif isinstance(price, Decimal):
        amount = price
    else:
        raise ConfigurationError(f"Unsupported price type: {type(price).__name__}")

    if not amount.is_finite() or amount < 0:
        raise ConfigurationError(f"Price must be a non-negative number, got '{price}'")

    scaled = amount * (Decimal(10) ** decimals)
    integral = scaled.to_integral_value()
    if integral != scaled:
        raise ConfigurationError(
            f"Price {price} cannot be represented with {decimals} decimals"
        )
    return int(integral)


def resolve_amount(requirement: Mapping[str, Any], decimals: int) -> int:
    """
    Resolve the amount of a loosely shaped requirement dict.

    This is the only place that interprets the different amount fields
    found in the wild. Precedence:
    1. ``amount`` - integer in smallest units (current protocol)
    2. ``maxAmountRequired`` - integer in smallest units (protocol v1)
    3. ``price`` - human price such as "$0.01"

    Raises:
        ConfigurationError: If none of the fields is present or the chosen one is invalid.
    """
    for field_name in ("amount", "maxAmountRequired"):
        raw = requirement.get(field_name)
        if raw is None or raw == "":
            continue
        text = str(raw).strip()
        if not is_uint_string(text):
            raise ConfigurationError(f"{field_name} must be an integer in smallest units, got '{raw}'")
        return int(text)

    price = requirement.get("price")
    if price is not None and price != "":
        return parse_price(str(price), decimals)

    raise ConfigurationError("Requirement has no amount, maxAmountRequired or price")


def format_amount(amount: int, decimals: int) -> str:
    """Render a smallest-unit amount as a human decimal string (10000, 6 -> "0.01")."""
    value = Decimal(amount) / (Decimal(10) ** decimals)
    return format(value.normalize(), "f") if amount else "0"


class PaymentRequirementsRegistry:
    """
    Builds the canonical requirement list for a resource.

    The payee is either pinned (``pay_to``) or read from the merchant
    wallet through a WalletCache. There is no fallback payee: without one,
    ``requirements_for`` raises ConfigurationError.
    """

    def __init__(
        self,
        network: Optional[str] = None,
        pay_to: Optional[str] = None,
        wallet_cache: Optional[WalletCache] = None,
        max_timeout_seconds: Optional[int] = None,
    ):
        self.network = network or settings.X402_NETWORK
        self.pay_to = pay_to
        self.wallet_cache = wallet_cache
        self.max_timeout_seconds = max_timeout_seconds or settings.X402_MAX_TIMEOUT_SECONDS

    @property
    def asset(self) -> AssetInfo:
        return get_asset(self.network)

    def resolve_payee(self) -> str:
        """
        Return the checksummed payee address.

        Raises:
            ConfigurationError: If no payee is configured or it is not an address.
        """
        if self.pay_to:
            address = self.pay_to
        elif self.wallet_cache is not None:
            address = self.wallet_cache.payee_address()
        else:
            logger.error("x402: no payee configured (X402_PAY_TO_ADDRESS / X402_MERCHANT_WALLET_ID)")
            raise ConfigurationError("No payee configured")

        if not is_hex_address(address):
            raise ConfigurationError(f"Payee is not a valid address: {address}")
        return to_checksum_address(address)

    def requirements_for(self, resource_id: str, price: PriceSpec) -> List[PaymentRequirements]:
        """
        Return the payment methods accepted for ``resource_id`` at ``price``.

        The first element is the default option. The result depends only on
        configuration and the cached payee, so repeated calls agree.

        Raises:
            ConfigurationError: If no requirement can be built.
        """
        asset = self.asset
        amount = parse_price(price, asset.decimals)
        pay_to = self.resolve_payee()

        requirement = PaymentRequirements(
            scheme=EXACT_SCHEME,
            network=self.network,
            asset=to_checksum_address(asset.address),
            pay_to=pay_to,
            amount=str(amount),
            max_timeout_seconds=self.max_timeout_seconds,
            extra={
                "name": asset.eip712_name,
                "version": asset.eip712_version,
            },
        )
        logger.debug(f"x402: requirements for {resource_id}: {amount} {asset.symbol} units to {pay_to}")
        return [requirement]
