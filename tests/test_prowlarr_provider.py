import threading
import time
import unittest
from unittest.mock import Mock

import requests

from resolvarr.core.errors import TransientProviderError
from resolvarr.core.limiter import ConcurrencyLimiter
from resolvarr.models.content_request import ContentRequest, MediaType
from resolvarr.models.source_candidate import GB, MB
from resolvarr.sources.prowlarr import ProwlarrProvider, build_queries


class _Settings:
    def __init__(self, **overrides):
        self.data = {
            "prowlarr_url": "http://prowlarr:9696",
            "prowlarr_api_key": "secret",
            "prowlarr_request_timeout_seconds": 12.0,
            "prowlarr_blocked_groups": ["YIFY"],
        }
        self.data.update(overrides)

    def get(self, key, default=None):
        return self.data.get(key, default)


ROWS = [
    {"title": "Inception.2010.1080p.BluRay", "seeders": 50, "size": 2 * GB,
     "magnetUrl": "magnet:?xt=urn:btih:" + "A" * 40 + "&dn=Inception"},
    {"title": "Inception.2010.720p.WEB", "seeders": 3, "size": 1 * GB, "infoHash": "d" * 40},
    {"title": "Inception.2010.720p.YIFY", "seeders": 500, "size": 1 * GB, "infoHash": "e" * 40},
    {"title": "Inception.2010.2160p", "seeders": 30, "size": 20 * GB, "infoHash": "B" * 40},
    {"title": "Inception.2010.480p", "seeders": 10, "size": 1 * GB, "guid": "https://tracker/t/" + "c" * 40},
    {"title": "Inception.Sample", "seeders": 100, "size": 10 * MB, "infoHash": "f" * 40},
    {"title": "Inception.2010.NoHash", "seeders": 100, "size": 2 * GB},
]


def _ok(rows=None):
    response = Mock(status_code=200)
    response.json.return_value = list(ROWS if rows is None else rows)
    return response


def _movie():
    return ContentRequest(title="Inception", type=MediaType.MOVIE, user_id="u1", credential="k", year=2010)


class TestBuildQueries(unittest.TestCase):
    def test_movie_variants(self):
        self.assertEqual(build_queries(_movie()), ["Inception 2010", "Inception"])

    def test_episode_variants(self):
        request = ContentRequest(title="Breaking Bad", type=MediaType.TV, user_id="u1", credential="k",
                                 year=2008, season=2, episode=5)
        self.assertEqual(build_queries(request), [
            "Breaking Bad S02E05",
            "Breaking Bad 2008 S02E05",
            "Breaking Bad S02",
            "Breaking Bad 2008 S02",
            "Breaking Bad Season 2",
        ])


class TestProwlarrParsing(unittest.TestCase):
    def setUp(self):
        self.provider = ProwlarrProvider(_Settings(), sleep=lambda s: None)

    def test_filters_sorts_and_builds_magnets(self):
        results = self.provider._parse_rows(ROWS)
        self.assertEqual([r.hash for r in results], ["a" * 40, "b" * 40, "c" * 40])
        self.assertEqual([r.seeder_count for r in results], [50, 30, 10])
        self.assertTrue(results[0].magnet_uri.startswith("magnet:?xt=urn:btih:AAAA"))
        self.assertTrue(results[1].magnet_uri.startswith("magnet:?xt=urn:btih:" + "b" * 40))
        self.assertEqual(results[1].resolution, 2160)

    def test_result_cap(self):
        provider = ProwlarrProvider(_Settings(prowlarr_max_results=1), sleep=lambda s: None)
        self.assertEqual(len(provider._parse_rows(ROWS[:-1])), 1)


class TestProwlarrRetries(unittest.TestCase):
    def setUp(self):
        self.sleeps = []
        self.provider = ProwlarrProvider(_Settings(), sleep=self.sleeps.append)
        self.provider.session = Mock()

    def test_request_carries_key_and_timeout(self):
        self.provider.session.get.return_value = _ok()
        self.provider._request("Inception 2010")
        kwargs = self.provider.session.get.call_args.kwargs
        self.assertEqual(kwargs["headers"]["X-Api-Key"], "secret")
        self.assertEqual(kwargs["timeout"], 12.0)
        self.assertEqual(kwargs["params"], {"query": "Inception 2010", "type": "search"})

    def test_retries_5xx_with_backoff(self):
        self.provider.session.get.side_effect = [Mock(status_code=503), Mock(status_code=502), _ok()]
        rows = self.provider._request_with_retries("Inception")
        self.assertEqual(len(rows), len(ROWS))
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_retries_timeouts(self):
        self.provider.session.get.side_effect = [requests.Timeout("slow"), _ok()]
        self.provider._request_with_retries("Inception")
        self.assertEqual(self.sleeps, [1.0])

    def test_gives_up_after_two_retries(self):
        self.provider.session.get.side_effect = [Mock(status_code=504)] * 3
        with self.assertRaises(TransientProviderError):
            self.provider._request_with_retries("Inception")
        self.assertEqual(self.provider.session.get.call_count, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_failed_variant_returns_nothing(self):
        self.provider.session.get.side_effect = [requests.ConnectionError("refused")] * 3
        self.assertEqual(self.provider._search_variant("Inception"), [])
        self.assertIn("failed", self.provider.last_error)

    def test_auth_error_not_retried(self):
        self.provider.session.get.return_value = Mock(status_code=401)
        self.assertEqual(self.provider._search_variant("Inception"), [])
        self.assertEqual(self.provider.session.get.call_count, 1)
        self.assertEqual(self.sleeps, [])


class TestProwlarrSearch(unittest.TestCase):
    def test_batches_end_with_single_completion(self):
        provider = ProwlarrProvider(_Settings(), sleep=lambda s: None)
        provider.session = Mock()
        provider.session.get.return_value = _ok()
        batches = []
        provider.search(_movie(), lambda c, done: batches.append((len(c), done)))
        self.assertEqual(batches, [(3, False), (3, True)])

    def test_unconfigured_completes_empty(self):
        provider = ProwlarrProvider(_Settings(prowlarr_api_key=""))
        batches = []
        provider.search(_movie(), lambda c, done: batches.append((c, done)))
        self.assertEqual(batches, [([], True)])
        self.assertIn("not configured", provider.last_error)

    def test_requests_go_through_limiter(self):
        limiter = ConcurrencyLimiter(1)
        provider = ProwlarrProvider(_Settings(), limiter=limiter, sleep=lambda s: None)
        provider.session = Mock()
        in_flight = []
        lock = threading.Lock()

        def slow_get(*args, **kwargs):
            with lock:
                in_flight.append(limiter.active)
            time.sleep(0.05)
            return _ok([])

        provider.session.get.side_effect = slow_get
        provider.search(_movie(), lambda c, done: None)
        self.assertEqual(limiter.peak, 1)
        self.assertEqual(in_flight, [1, 1])


class TestConcurrencyLimiter(unittest.TestCase):
    def test_caps_parallel_work(self):
        limiter = ConcurrencyLimiter(2)
        release = threading.Event()

        def work():
            with limiter.slot():
                release.wait(2)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        time.sleep(0.1)
        self.assertEqual(limiter.active, 2)
        release.set()
        for t in threads:
            t.join(2)
        self.assertEqual(limiter.peak, 2)
        self.assertEqual(limiter.active, 0)

    def test_slot_timeout(self):
        limiter = ConcurrencyLimiter(1)
        with limiter.slot():
            with self.assertRaises(TimeoutError):
                with limiter.slot(timeout=0.01):
                    pass

    def test_rejects_zero(self):
        with self.assertRaises(ValueError):
            ConcurrencyLimiter(0)


if __name__ == "__main__":
    unittest.main()
