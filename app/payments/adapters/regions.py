"""
Region routing: which processor and currency serve a booking.

Resolved once when a Booking or Subscription is created and stored on the
entity; never recomputed afterwards.

Usage:
    from payments.adapters.regions import resolve_region

    region = resolve_region("KE")
    region.code, region.currency, region.processor  # ("GH", "GHS", "paystack")
"""

from __future__ import annotations

from dataclasses import dataclass

from payments.state_machines import Processor


@dataclass(frozen=True)
class Region:
    code: str
    currency: str
    processor: str


REGIONS: dict[str, Region] = {
    "NA": Region("NA", "USD", Processor.STRIPE),
    "EU": Region("EU", "EUR", Processor.STRIPE),
    "GH": Region("GH", "GHS", Processor.PAYSTACK),
    "NG": Region("NG", "NGN", Processor.PAYSTACK),
}

# Countries the regional processor serves directly
PAYSTACK_COUNTRIES = frozenset({"GH", "NG", "ZA", "KE", "CI", "SN", "UG", "RW", "TZ", "GN"})

NORTH_AMERICA_COUNTRIES = frozenset({"US", "CA"})

AFRICAN_COUNTRIES = frozenset(
    {
        "DZ", "AO", "BJ", "BW", "BF", "BI", "CV", "CM", "CF", "TD", "KM", "CD",
        "CG", "CI", "DJ", "EG", "GQ", "ER", "SZ", "ET", "GA", "GM", "GH", "GN",
        "GW", "KE", "LS", "LR", "LY", "MG", "MW", "ML", "MR", "MU", "MA", "MZ",
        "NA", "NE", "NG", "RW", "ST", "SN", "SC", "SL", "SO", "ZA", "SS", "SD",
        "TZ", "TG", "TN", "UG", "ZM", "ZW",
    }
)


def resolve_region(code: str) -> Region:
    """
    Map a region or ISO 3166 country code onto a payment region.

    Region codes (NA, EU, GH, NG) resolve to themselves. Nigeria keeps its own
    region; every other African country uses the GH region. US/CA map to NA
    and everything else to EU.

    Note:
        "NA" is both the North America region and Namibia's country code;
        the region meaning wins.
    """
    normalized = (code or "").strip().upper()
    if normalized in REGIONS:
        return REGIONS[normalized]
    if normalized in NORTH_AMERICA_COUNTRIES:
        return REGIONS["NA"]
    if normalized in PAYSTACK_COUNTRIES or normalized in AFRICAN_COUNTRIES:
        return REGIONS["GH"]
    return REGIONS["EU"]


def processor_for_region(code: str) -> str:
    return resolve_region(code).processor


def currency_for_region(code: str) -> str:
    return resolve_region(code).currency
