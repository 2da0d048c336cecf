# backend/booking_engine/services/fee_calculator.py
"""
Platform fee policies.

Pure functions of an (already discounted) service price in cents. The buyer
pays price + fee; the provider is paid the full service price and the fee is
the platform's application fee on the charge.

Two policies exist and the product surface picks one in configuration:

* CappedPercentageFeePolicy: 8% of the price, clamped to [$0.99, $12.99].
* GrossUpFeePolicy: the smallest fee that still leaves the platform its
  target net after the processor takes its percentage + fixed cut of the
  whole charge.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
import logging
from typing import Protocol, Union

from ..core.config import Settings
from ..core.exceptions import ValidationException

logger = logging.getLogger(__name__)

NET_REVENUE_TOLERANCE_CENTS = 1


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _validate_price(price_cents: int) -> None:
    if isinstance(price_cents, bool) or not isinstance(price_cents, int):
        raise ValidationException(
            "Price must be an integer number of cents",
            code="invalid_price",
            details={"price_cents": price_cents},
        )
    if price_cents < 0:
        raise ValidationException(
            "Price must not be negative",
            code="invalid_price",
            details={"price_cents": price_cents},
        )


@dataclass(frozen=True)
class FeeQuote:
    service_price_cents: int
    platform_fee_cents: int

    @property
    def total_cents(self) -> int:
        return self.service_price_cents + self.platform_fee_cents

    @property
    def provider_payout_cents(self) -> int:
        return self.service_price_cents


class FeePolicy(Protocol):
    name: str

    def fee(self, price_cents: int) -> int: ...

    def quote(self, price_cents: int) -> FeeQuote: ...


@dataclass(frozen=True)
class CappedPercentageFeePolicy:
    rate: Decimal = Decimal("0.08")
    minimum_cents: int = 99
    maximum_cents: int = 1299
    name: str = "capped_percentage"

    def fee(self, price_cents: int) -> int:
        _validate_price(price_cents)
        raw = _round_half_up(Decimal(price_cents) * self.rate)
        return max(self.minimum_cents, min(raw, self.maximum_cents))

    def quote(self, price_cents: int) -> FeeQuote:
        return FeeQuote(price_cents, self.fee(price_cents))


@dataclass(frozen=True)
class GrossUpFeePolicy:
    target_net_cents: int = 99
    processor_rate: Decimal = Decimal("0.029")
    processor_fixed_cents: int = 30
    name: str = "gross_up"

    def fee(self, price_cents: int) -> int:
        _validate_price(price_cents)
        numerator = (
            Decimal(self.target_net_cents)
            + self.processor_rate * Decimal(price_cents)
            + Decimal(self.processor_fixed_cents)
        )
        return _ceil(numerator / (Decimal(1) - self.processor_rate))

    def quote(self, price_cents: int) -> FeeQuote:
        return FeeQuote(price_cents, self.fee(price_cents))

    def processor_cut_cents(self, total_cents: int) -> int:
        """What the processor keeps from a charge of ``total_cents``."""
        return _round_half_up(
            self.processor_rate * Decimal(total_cents) + Decimal(self.processor_fixed_cents)
        )


AnyFeePolicy = Union[CappedPercentageFeePolicy, GrossUpFeePolicy]


@dataclass(frozen=True)
class NetRevenueCheck:
    platform_net_cents: int
    target_net_cents: int

    @property
    def deviation_cents(self) -> int:
        return self.platform_net_cents - self.target_net_cents

    @property
    def within_tolerance(self) -> bool:
        return abs(self.deviation_cents) <= NET_REVENUE_TOLERANCE_CENTS


def validate_platform_net(quote: FeeQuote, policy: GrossUpFeePolicy) -> NetRevenueCheck:
    """
    Check what the platform actually keeps for a gross-up quote.

    A deviation beyond the rounding tolerance is reported as a warning; it is
    never an error, the charge still goes through.
    """
    net = quote.platform_fee_cents - policy.processor_cut_cents(quote.total_cents)
    check = NetRevenueCheck(platform_net_cents=net, target_net_cents=policy.target_net_cents)
    if not check.within_tolerance:
        logger.warning(
            "Platform net revenue outside tolerance",
            extra={
                "service_price_cents": quote.service_price_cents,
                "platform_fee_cents": quote.platform_fee_cents,
                "platform_net_cents": net,
                "target_net_cents": policy.target_net_cents,
                "deviation_cents": check.deviation_cents,
            },
        )
    return check


def build_fee_policy(config: Settings) -> AnyFeePolicy:
    """The fee policy configured for booking requests."""
    if config.booking_fee_policy == "gross_up":
        return GrossUpFeePolicy(
            target_net_cents=config.fee_target_net_cents,
            processor_rate=Decimal(str(config.fee_processor_rate)),
            processor_fixed_cents=config.fee_processor_fixed_cents,
        )
    return CappedPercentageFeePolicy(
        rate=Decimal(str(config.fee_percentage_rate)),
        minimum_cents=config.fee_minimum_cents,
        maximum_cents=config.fee_maximum_cents,
    )
