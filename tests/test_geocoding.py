"""Unit tests for app/services/geocoding.py.

The provider is replaced with an httpx.MockTransport; no network calls are made.
"""

import math
import unittest

import httpx

from app.core.contracts import GeoPoint
from app.services.geocoding import (
    GeocodingResolver,
    GreekPlacesDataset,
    clean_municipality_for_query,
    in_greece,
    municipality_parts,
    name_variations,
    normalize_coordinate,
    normalize_pair,
    region_center,
    spread_duplicates,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _no_sleep(_seconds):
    return None


class ProviderStub:
    """Callable MockTransport handler that replays a list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    @property
    def calls(self) -> int:
        return len(self.requests)


def make_resolver(stub, **kwargs) -> GeocodingResolver:
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    kwargs.setdefault("min_interval_s", 0.0)
    kwargs.setdefault("region_fallback", False)
    return GeocodingResolver(client=client, sleep=_no_sleep, **kwargs)


def nominatim_hit(lat="38.1500", lon="23.9800", **address) -> httpx.Response:
    return httpx.Response(
        200,
        json=[{"lat": lat, "lon": lon, "display_name": "Καλέντζι", "address": address}],
    )


SETTLEMENTS = [
    {
        "Region": "Περιφέρεια Αττικής",
        "Municipality": "Δήμος Ωρωπού",
        "City": "Κάλαμος",
        "Population": "1200",
        "Latitude": "382833",
        "Longitude": "237667",
    },
    {
        "region": "Περιφέρεια Ιονίων Νήσων",
        "municipality": "Δήμος Λευκάδας",
        "city": "Κάλαμος",
        "population": 500,
        "latitude": 38.62,
        "longitude": 20.91,
    },
    {
        "region": "Île-de-France",
        "municipality": "Paris",
        "city": "Paris",
        "population": 2000000,
        "latitude": 48.85,
        "longitude": 2.35,
    },
]


# ---------------------------------------------------------------------------
# Coordinate normalisation
# ---------------------------------------------------------------------------

class TestNormalizeCoordinate(unittest.TestCase):

    def test_large_integer_latitude(self):
        self.assertAlmostEqual(normalize_coordinate(370551454, 90.0), 37.0551454, places=6)

    def test_large_integer_longitude(self):
        self.assertAlmostEqual(normalize_coordinate(221139316, 180.0), 22.1139316, places=6)

    def test_pair_from_strings(self):
        lat, lon = normalize_pair("370551454", "221139316")
        self.assertAlmostEqual(lat, 37.0551454, places=6)
        self.assertAlmostEqual(lon, 22.1139316, places=6)

    def test_in_range_value_unchanged(self):
        self.assertEqual(normalize_coordinate("38,25", 90.0), 38.25)

    def test_garbage_is_none(self):
        self.assertIsNone(normalize_coordinate("n/a", 90.0))
        self.assertIsNone(normalize_coordinate(None, 90.0))
        self.assertIsNone(normalize_pair("38.0", "nan"))


class TestSpreadDuplicates(unittest.TestCase):

    def test_first_occurrence_keeps_position(self):
        p = GeoPoint(lat=38.0, lng=23.0)
        out = spread_duplicates([p, p, p])
        self.assertEqual(out[0], p)

    def test_repeats_are_offset(self):
        p = GeoPoint(lat=38.0, lng=23.0)
        out = spread_duplicates([p, p, p])
        self.assertAlmostEqual(out[1].lat, 38.0 + 0.01 * math.sin(math.pi / 4))
        self.assertAlmostEqual(out[1].lng, 23.0 + 0.01 * math.cos(math.pi / 4))
        self.assertAlmostEqual(out[2].lat, 38.0 + 0.02)
        self.assertAlmostEqual(out[2].lng, 23.0, places=9)
        self.assertEqual(len({(q.lat, q.lng) for q in out}), 3)

    def test_offsets_stay_inside_greece(self):
        p = GeoPoint(lat=41.995, lng=26.0)
        out = spread_duplicates([p, p, p, p])
        self.assertTrue(all(in_greece(q.lat, q.lng) for q in out))
        self.assertEqual(len({(q.lat, q.lng) for q in out}), 4)

    def test_none_passes_through(self):
        p = GeoPoint(lat=38.0, lng=23.0)
        self.assertEqual(spread_duplicates([None, p, None]), [None, p, None])


# ---------------------------------------------------------------------------
# Greek names
# ---------------------------------------------------------------------------

class TestGreekNames(unittest.TestCase):

    def test_genitive_variations(self):
        self.assertEqual(name_variations("Καλάμου"), ["ΚΑΛΑΜΟΥ", "ΚΑΛΑΜΟΣ", "ΚΑΛΑΜΟ"])

    def test_nominative_variations(self):
        self.assertIn("ΚΑΛΑΜΟ", name_variations("Κάλαμος"))

    def test_empty_name(self):
        self.assertEqual(name_variations(""), [])

    def test_municipality_parts(self):
        self.assertEqual(municipality_parts("Δ. ΣΠΑΡΤΗΣ - ΜΥΣΤΡΑ"), ["ΣΠΑΡΤΗΣ", "ΜΥΣΤΡΑ"])

    def test_clean_municipality_keeps_case(self):
        self.assertEqual(clean_municipality_for_query("Δήμος  Μαραθώνος"), "Μαραθώνος")
        self.assertEqual(clean_municipality_for_query("ΔΗΜΟΣ ΩΡΩΠΟΥ"), "ΩΡΩΠΟΥ")

    def test_region_center(self):
        self.assertEqual(region_center("ΠΕΡΙΦΕΡΕΙΑ ΑΤΤΙΚΗΣ"), (37.9838, 23.7275))
        self.assertEqual(region_center("Περιφέρεια Κρήτης"), (35.3387, 25.1442))
        self.assertIsNone(region_center(None))


# ---------------------------------------------------------------------------
# Settlement dataset
# ---------------------------------------------------------------------------

class TestGreekPlacesDataset(unittest.TestCase):

    def setUp(self):
        self.ds = GreekPlacesDataset.from_records(SETTLEMENTS)

    def test_out_of_envelope_records_dropped(self):
        self.assertEqual(self.ds.size, 2)

    def test_large_integer_coordinates_normalised(self):
        hit = self.ds.lookup("Κάλαμος", region="Περιφέρεια Αττικής")
        self.assertAlmostEqual(hit.lat, 38.2833, places=4)
        self.assertAlmostEqual(hit.lng, 23.7667, places=4)

    def test_inflected_name_matches(self):
        hit = self.ds.lookup("Καλάμου", region="Περιφέρεια Αττικής")
        self.assertIsNotNone(hit)
        self.assertEqual(hit.municipality, "Δήμος Ωρωπού")

    def test_region_filter_is_strict(self):
        self.assertIsNone(self.ds.lookup("Κάλαμος", region="Περιφέρεια Κρήτης"))

    def test_region_filter_picks_other_entry(self):
        hit = self.ds.lookup("Κάλαμος", region="ΠΕΡΙΦΕΡΕΙΑ ΙΟΝΙΩΝ ΝΗΣΩΝ")
        self.assertEqual(hit.municipality, "Δήμος Λευκάδας")

    def test_largest_population_wins_without_context(self):
        self.assertEqual(self.ds.lookup("Κάλαμος").population, 1200)

    def test_municipality_preferred(self):
        hit = self.ds.lookup("Κάλαμος", municipality="Λευκάδας")
        self.assertEqual(hit.population, 500)

    def test_unknown_name(self):
        self.assertIsNone(self.ds.lookup("Ατλαντίδα"))


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class TestResolver(unittest.IsolatedAsyncioTestCase):

    async def test_not_found_when_provider_has_nothing(self):
        stub = ProviderStub(httpx.Response(200, json=[]))
        resolver = make_resolver(stub)
        result = await resolver.resolve("Άγνωστη τοποθεσία", "Δήμος Χ")
        self.assertIsNone(result)
        # exact + relaxed, no region given
        self.assertEqual(stub.calls, 2)
        self.assertEqual(stub.requests[0].url.params["q"], "Άγνωστη τοποθεσία, Χ, Greece")
        self.assertEqual(stub.requests[1].url.params["q"], "Χ, Greece")

    async def test_misses_are_cached(self):
        stub = ProviderStub(httpx.Response(200, json=[]))
        resolver = make_resolver(stub)
        await resolver.resolve("Άγνωστη τοποθεσία", "Δήμος Χ")
        await resolver.resolve("Άγνωστη τοποθεσία", "Δήμος Χ")
        self.assertEqual(stub.calls, 2)
        self.assertIsNone(resolver.cached("Χ, Greece").result)

    async def test_exact_hit(self):
        stub = ProviderStub(nominatim_hit(municipality="Δήμος Μαραθώνος", state="Αττική"))
        resolver = make_resolver(stub)
        result = await resolver.resolve("ΚΑΛΕΝΤΖΙ", "ΔΗΜΟΣ ΜΑΡΑΘΩΝΟΣ", "ΠΕΡΙΦΕΡΕΙΑ ΑΤΤΙΚΗΣ")
        self.assertEqual(result.source, "exact")
        self.assertEqual(result.municipality, "Δήμος Μαραθώνος")
        self.assertEqual(result.region, "Αττική")
        self.assertEqual(stub.calls, 1)
        params = stub.requests[0].url.params
        self.assertEqual(params["countrycodes"], "gr")
        self.assertEqual(params["format"], "json")

    async def test_shared_query_costs_one_call(self):
        stub = ProviderStub(nominatim_hit())
        resolver = make_resolver(stub)
        first = await resolver.lookup("Καλέντζι, Μαραθώνα, Greece", "exact")
        second = await resolver.lookup("  Καλέντζι ,  Μαραθώνα, Greece ", "exact")
        self.assertEqual(first, second)
        self.assertEqual(stub.calls, 1)
        self.assertEqual(resolver.stats()["hits"], 1)
        self.assertEqual(resolver.cached("Καλέντζι, Μαραθώνα, Greece").tier, "exact")

    async def test_out_of_envelope_result_discarded(self):
        stub = ProviderStub(httpx.Response(200, json=[{"lat": "48.85", "lon": "2.35"}]))
        resolver = make_resolver(stub)
        self.assertIsNone(await resolver.resolve("Paris", None))

    async def test_large_integer_provider_coordinates(self):
        stub = ProviderStub(nominatim_hit(lat="370551454", lon="221139316"))
        resolver = make_resolver(stub)
        result = await resolver.resolve("Μυστράς", None)
        self.assertAlmostEqual(result.lat, 37.0551454, places=6)
        self.assertAlmostEqual(result.lng, 22.1139316, places=6)

    async def test_transient_failure_retried_once(self):
        stub = ProviderStub(httpx.Response(503), nominatim_hit())
        resolver = make_resolver(stub)
        result = await resolver.lookup("Καλέντζι, Greece", "exact")
        self.assertIsNotNone(result)
        self.assertEqual(stub.calls, 2)

    async def test_persistent_failure_not_cached(self):
        stub = ProviderStub(httpx.Response(503))
        resolver = make_resolver(stub)
        self.assertIsNone(await resolver.lookup("Καλέντζι, Greece", "exact"))
        self.assertEqual(stub.calls, 2)
        self.assertIsNone(resolver.cached("Καλέντζι, Greece"))

    async def test_client_error_not_retried(self):
        stub = ProviderStub(httpx.Response(400))
        resolver = make_resolver(stub)
        self.assertIsNone(await resolver.lookup("Καλέντζι, Greece", "exact"))
        self.assertEqual(stub.calls, 1)
        self.assertIsNone(resolver.cached("Καλέντζι, Greece"))

    async def test_malformed_body_not_cached(self):
        stub = ProviderStub(httpx.Response(200, content=b"<html>busy</html>"))
        resolver = make_resolver(stub)
        self.assertIsNone(await resolver.lookup("Καλέντζι, Greece", "exact"))
        self.assertEqual(stub.calls, 1)
        self.assertIsNone(resolver.cached("Καλέντζι, Greece"))

    async def test_requests_are_spaced(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        stub = ProviderStub(httpx.Response(200, json=[]))
        client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
        resolver = GeocodingResolver(
            client=client,
            min_interval_s=1.1,
            region_fallback=False,
            sleep=record_sleep,
            clock=lambda: 100.0,
        )
        await resolver.lookup("Α, Greece", "exact")
        await resolver.lookup("Β, Greece", "exact")
        self.assertEqual(len(sleeps), 1)
        self.assertAlmostEqual(sleeps[0], 1.1)

    async def test_dataset_tier_skips_provider(self):
        stub = ProviderStub(httpx.Response(200, json=[]))
        resolver = make_resolver(stub, dataset=GreekPlacesDataset.from_records(SETTLEMENTS))
        result = await resolver.resolve("Καλάμου", "Δήμος Ωρωπού", "Περιφέρεια Αττικής")
        self.assertEqual(result.source, "dataset")
        self.assertEqual(stub.calls, 0)

    async def test_region_table_fallback(self):
        stub = ProviderStub(httpx.Response(200, json=[]))
        resolver = make_resolver(stub, region_fallback=True)
        result = await resolver.resolve("Άγνωστη τοποθεσία", "Δήμος Χ", "ΠΕΡΙΦΕΡΕΙΑ ΑΤΤΙΚΗΣ")
        self.assertEqual(result.source, "region_table")
        self.assertEqual((result.lat, result.lng), (37.9838, 23.7275))
        # exact, relaxed, region
        self.assertEqual(stub.calls, 3)

    async def test_empty_input(self):
        stub = ProviderStub(httpx.Response(200, json=[]))
        resolver = make_resolver(stub)
        self.assertIsNone(await resolver.resolve("", None, None))
        self.assertEqual(stub.calls, 0)


if __name__ == "__main__":
    unittest.main()
