import pytest

from delivery_dispatch.config import RoutingConfig, RoutingConfigProvider
from delivery_dispatch.pricing import BandPricing, PricingBand, PricingZone

pytestmark = pytest.mark.unit

ORIGIN = (0.0, 0.0)


@pytest.fixture()
def provider():
    return RoutingConfigProvider(RoutingConfig(origin_lat=ORIGIN[0], origin_lng=ORIGIN[1], max_radius_km=15))


def _at_km(km):
    # due north of the origin; one degree of latitude is ~111.19 km
    return (km / 111.19, 0.0)


class TestDistanceBands:
    @pytest.mark.parametrize("km,price,label", [(1, 5.0, "up to 3 km"), (5, 10.0, "up to 10 km"), (12, 15.0, "up to 30 km")])
    def test_default_bands(self, provider, km, price, label):
        quote = BandPricing(provider).price_for("Rua A", *_at_km(km))
        assert quote.price == price
        assert quote.rule.type == "DISTANCE"
        assert quote.rule.label == label

    def test_beyond_radius_still_priced(self, provider):
        quote = BandPricing(provider).price_for("Rua A", *_at_km(20))
        assert quote.price == 15.0
        assert quote.rule.label == "beyond radius (15 km)"

    def test_past_last_band_uses_last_band(self, provider):
        quote = BandPricing(provider).price_for("Rua A", *_at_km(60))
        assert quote.price == 15.0

    def test_no_bands(self, provider):
        quote = BandPricing(provider, bands=[]).price_for("Rua A", *_at_km(1))
        assert quote.price == 0.0
        assert quote.rule.label == "no band configured"

    def test_bands_sorted_by_distance(self, provider):
        bands = [PricingBand(max_distance_km=10, price=9), PricingBand(max_distance_km=2, price=4)]
        assert BandPricing(provider, bands=bands).price_for("Rua A", *_at_km(1)).price == 4.0

    def test_follows_origin_changes(self, provider):
        pricing = BandPricing(provider)
        lat, lng = _at_km(20)
        provider.update(origin_lat=lat, origin_lng=lng)
        assert pricing.price_for("Rua A", lat, lng).price == 5.0


class TestZones:
    def test_zone_match_wins_over_distance(self, provider):
        pricing = BandPricing(provider, zones=[PricingZone(name="Centro", match_text="centro", price=7.5)])
        quote = pricing.price_for("Av. Eduardo Ribeiro, CENTRO", *_at_km(25))
        assert quote.price == 7.5
        assert quote.rule.type == "ZONE"
        assert quote.rule.label == "Centro"

    def test_no_zone_match_falls_back_to_bands(self, provider):
        pricing = BandPricing(provider, zones=[PricingZone(name="Centro", match_text="centro", price=7.5)])
        assert pricing.price_for("Rua Ponta Negra", *_at_km(1)).rule.type == "DISTANCE"
