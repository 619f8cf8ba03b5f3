from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import RoutingConfigProvider
from .geo import haversine_km
from .models import PricingRule


@dataclass
class PriceQuote:
    price: float
    rule: PricingRule


@dataclass
class PricingBand:
    max_distance_km: float
    price: float


@dataclass
class PricingZone:
    name: str
    match_text: str
    price: float


DEFAULT_BANDS: List[PricingBand] = [
    PricingBand(max_distance_km=3, price=5),
    PricingBand(max_distance_km=10, price=10),
    PricingBand(max_distance_km=30, price=15),
]


class PricingLookup:
    def price_for(self, address: str, lat: float, lng: float) -> PriceQuote:
        raise NotImplementedError


class BandPricing(PricingLookup):
    """
    Zone match on the address text first, then distance bands from the origin.
    Distance past the last band still gets the last band's price.
    """
    def __init__(
        self,
        provider: RoutingConfigProvider,
        bands: Optional[Sequence[PricingBand]] = None,
        zones: Optional[Sequence[PricingZone]] = None,
    ):
        self.provider = provider
        self.bands = sorted(DEFAULT_BANDS if bands is None else bands, key=lambda b: b.max_distance_km)
        self.zones = list(zones or [])

    def price_for(self, address: str, lat: float, lng: float) -> PriceQuote:
        normalized = address.lower()
        for zone in self.zones:
            if zone.match_text.lower() in normalized:
                return PriceQuote(price=zone.price, rule=PricingRule(type="ZONE", label=zone.name))

        if not self.bands:
            return PriceQuote(price=0.0, rule=PricingRule(type="DISTANCE", label="no band configured"))

        cfg = self.provider.current()
        dist = haversine_km(cfg.origin, (lat, lng))
        band = next((b for b in self.bands if dist <= b.max_distance_km), self.bands[-1])

        if dist > cfg.max_radius_km:
            label = f"beyond radius ({cfg.max_radius_km:g} km)"
        else:
            label = f"up to {band.max_distance_km:g} km"
        return PriceQuote(price=float(band.price), rule=PricingRule(type="DISTANCE", label=label))

