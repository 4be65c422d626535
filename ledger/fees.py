"""Delivery and platform fee arithmetic, all in minor currency units.

Every derived amount is rounded exactly once, half away from zero. Splits are
always computed by subtraction so the two sides add back up to the total.
"""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from ledger.errors import InvalidDistanceError

COURIER_SHARE_BPS = 8800
PLATFORM_FEE_BPS = 1200
LONG_DISTANCE_THRESHOLD_KM = 30.0
INTERNATIONAL_SURCHARGE = 500


class DeliveryType(str, enum.Enum):
    PLATFORM_COURIER = "PLATFORM_COURIER"
    SELLER_DELIVERY = "SELLER_DELIVERY"


@dataclass(frozen=True)
class DeliveryTariff:
    base_fee: int
    per_km_rate: int
    free_distance_km: float


TARIFFS = {
    DeliveryType.PLATFORM_COURIER: DeliveryTariff(base_fee=250, per_km_rate=50, free_distance_km=3.0),
    DeliveryType.SELLER_DELIVERY: DeliveryTariff(base_fee=300, per_km_rate=60, free_distance_km=5.0),
}

LONG_DISTANCE_BASE_FEE = 250
LONG_DISTANCE_FREE_KM = 3.0
# (upper bound in km, rate per km); the last band is open-ended.
LONG_DISTANCE_BANDS = (
    (30.0, 50),
    (60.0, 40),
    (100.0, 30),
    (None, 20),
)


@dataclass(frozen=True)
class DeliveryFee:
    base_fee: int
    distance_fee: int
    total: int
    courier_cut: int
    platform_cut: int
    breakdown: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "baseFee": self.base_fee,
            "distanceFee": self.distance_fee,
            "totalDeliveryFee": self.total,
            "deliveryPersonCut": self.courier_cut,
            "homecheffCut": self.platform_cut,
            "breakdown": dict(self.breakdown),
        }


@dataclass(frozen=True)
class PlatformFee:
    order_total: int
    platform_fee: int
    seller_net: int


def round_minor(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def bps_of(amount_minor: int, bps: int) -> int:
    raw = (Decimal(int(amount_minor)) * Decimal(int(bps))) / Decimal("10000")
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_delivery_fee(total: int) -> tuple[int, int]:
    """Return ``(courier_cut, platform_cut)`` for a delivery fee."""
    total = int(total)
    if total < 0:
        raise ValueError(f"Delivery fee must be non-negative, got {total}")
    courier_cut = bps_of(total, COURIER_SHARE_BPS)
    return courier_cut, total - courier_cut


def _check_distance(distance_km) -> float:
    try:
        distance = float(distance_km)
    except (TypeError, ValueError):
        raise InvalidDistanceError(distance_km)
    if not math.isfinite(distance) or distance < 0:
        raise InvalidDistanceError(distance_km)
    return distance


def compute_delivery_fee(distance_km: float, delivery_type: DeliveryType) -> DeliveryFee:
    distance = _check_distance(distance_km)
    tariff = TARIFFS[DeliveryType(delivery_type)]

    chargeable = max(Decimal("0"), Decimal(str(distance)) - Decimal(str(tariff.free_distance_km)))
    distance_fee = round_minor(chargeable * tariff.per_km_rate)
    total = tariff.base_fee + distance_fee
    courier_cut, platform_cut = split_delivery_fee(total)

    return DeliveryFee(
        base_fee=tariff.base_fee,
        distance_fee=distance_fee,
        total=total,
        courier_cut=courier_cut,
        platform_cut=platform_cut,
        breakdown={
            "deliveryType": DeliveryType(delivery_type).value,
            "distanceKm": distance,
            "freeDistanceKm": tariff.free_distance_km,
            "chargeableKm": float(chargeable),
            "perKmRate": tariff.per_km_rate,
        },
    )


def compute_long_distance_fee(distance_km: float, international: bool = False) -> DeliveryFee:
    distance = Decimal(str(_check_distance(distance_km)))

    bands = []
    raw_fee = Decimal("0")
    lower = Decimal(str(LONG_DISTANCE_FREE_KM))
    for upper, rate in LONG_DISTANCE_BANDS:
        upper_d = Decimal(str(upper)) if upper is not None else None
        if distance <= lower:
            break
        top = distance if upper_d is None else min(distance, upper_d)
        km = top - lower
        raw_fee += km * rate
        bands.append({"fromKm": float(lower), "toKm": float(top), "perKmRate": rate})
        if upper_d is None or distance <= upper_d:
            break
        lower = upper_d

    distance_fee = round_minor(raw_fee)
    surcharge = INTERNATIONAL_SURCHARGE if international else 0
    distance_fee += surcharge
    total = LONG_DISTANCE_BASE_FEE + distance_fee
    courier_cut, platform_cut = split_delivery_fee(total)

    return DeliveryFee(
        base_fee=LONG_DISTANCE_BASE_FEE,
        distance_fee=distance_fee,
        total=total,
        courier_cut=courier_cut,
        platform_cut=platform_cut,
        breakdown={
            "distanceKm": float(distance),
            "bands": bands,
            "internationalSurcharge": surcharge,
        },
    )


def quote_delivery_fee(distance_km: float, delivery_type: DeliveryType, international: bool = False) -> DeliveryFee:
    distance = _check_distance(distance_km)
    if international or distance > LONG_DISTANCE_THRESHOLD_KM:
        return compute_long_distance_fee(distance, international=international)
    return compute_delivery_fee(distance, delivery_type)


def compute_platform_fee(order_total: int) -> PlatformFee:
    order_total = int(order_total)
    if order_total < 0:
        raise ValueError(f"Order total must be non-negative, got {order_total}")
    platform_fee = bps_of(order_total, PLATFORM_FEE_BPS)
    return PlatformFee(
        order_total=order_total,
        platform_fee=platform_fee,
        seller_net=order_total - platform_fee,
    )
