import threading
import unittest

from resolvarr.core.aggregator import Aggregator, CandidatePool
from resolvarr.core.bad_links import BadLinkRegistry
from resolvarr.core.event_bus import EventBus, Events
from resolvarr.models.content_request import ContentRequest, MediaType
from resolvarr.models.source_candidate import GB, MB, FileCandidate, TorrentCandidate
from resolvarr.sources.base import DebridAvailability, FilesystemCacheProvider, IndexerProvider, RuntimeLookup


class FakeFilesystem(FilesystemCacheProvider):
    name = "FakeFilesystem"

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.calls = []

    def search(self, title, year, media_type, season=None, episode=None, duration_hint_min=None):
        self.calls.append((title, year, media_type, season, episode, duration_hint_min))
        if self.error:
            raise self.error
        return list(self.results)


class FakeIndexer(IndexerProvider):
    name = "FakeIndexer"

    def __init__(self, batches=None, gate=None, error=None):
        self.batches = list(batches or [])
        self.gate = gate
        self.error = error

    def search(self, query, on_batch):
        if self.gate is not None:
            self.gate.wait(5)
        if self.error:
            raise self.error
        for i, batch in enumerate(self.batches):
            on_batch(list(batch), i == len(self.batches) - 1)
        if not self.batches:
            on_batch([], True)


class FakeAvailability(DebridAvailability):
    def __init__(self, cached=(), error=None):
        self.cached = set(cached)
        self.error = error

    def check_cached(self, hashes, credential):
        if self.error:
            raise self.error
        return {h for h in hashes if h in self.cached}


class FixedRuntime(RuntimeLookup):
    def __init__(self, minutes):
        self.minutes = minutes

    def get_runtime_minutes(self, external_id, media_type, season=None, episode=None):
        return self.minutes


def _movie(**overrides):
    values = dict(title="Inception", type=MediaType.MOVIE, user_id="u1", credential="key-1", year=2010)
    values.update(overrides)
    return ContentRequest(**values)


def _episode(**overrides):
    values = dict(title="Breaking Bad", type=MediaType.TV, user_id="u1", credential="key-1",
                  season=2, episode=5)
    values.update(overrides)
    return ContentRequest(**values)


def _torrent(title, hash_char, size_gb=2.0, seeders=20, resolution=1080):
    return TorrentCandidate(
        display_title=title,
        resolution=resolution,
        hash=hash_char * 40,
        size_bytes=int(size_gb * GB),
        seeder_count=seeders,
    )


def _file(path, size_mb=4000.0, resolution=1080):
    directory = path.rsplit("/", 2)[-2]
    return FileCandidate(
        display_title=directory,
        resolution=resolution,
        is_cached=True,
        file_path=path,
        file_size_mb=size_mb,
        mb_per_minute=round(size_mb / 120.0, 1),
    )


class TestCandidatePool(unittest.TestCase):
    def test_first_insert_wins(self):
        pool = CandidatePool()
        first = _torrent("Inception.2010.1080p", "a")
        duplicate = _torrent("Inception.2010.1080p.REPACK", "A")
        self.assertTrue(pool.add(first))
        self.assertFalse(pool.add(duplicate))
        self.assertEqual(len(pool), 1)
        self.assertIs(pool.candidates()[0], first)
        self.assertIn("a" * 40, pool)

    def test_discovery_index_follows_insert_order(self):
        pool = CandidatePool()
        pool.add_all([_torrent("x", "a"), _torrent("y", "b"), _torrent("z", "a")])
        self.assertEqual([c.discovery_index for c in pool.candidates()], [0, 1])


    def test_concurrent_adds_keep_first_entry(self):
        for _ in range(20):
            pool = CandidatePool()
            barrier = threading.Barrier(2)
            entries = [_torrent("Inception.2010.1080p", "a"), _torrent("Inception.2010.1080p.PROPER", "a")]
            results = {}

            def add(index):
                barrier.wait(2)
                results[index] = pool.add(entries[index])

            threads = [threading.Thread(target=add, args=(i,)) for i in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(5)

            self.assertEqual(len(pool), 1)
            self.assertEqual(sorted(results.values()), [False, True])
            winner = 0 if results[0] else 1
            self.assertIs(pool.candidates()[0], entries[winner])


class TestAggregatorSearch(unittest.TestCase):
    def test_duplicates_across_batches_keep_first(self):
        indexer = FakeIndexer(batches=[
            [_torrent("Inception.2010.1080p.BluRay", "a")],
            [_torrent("Inception.2010.1080p.WEB", "a"), _torrent("Inception.2010.720p", "b", resolution=720)],
        ])
        result = Aggregator(indexer=indexer).search(_movie())
        self.assertTrue(result.is_complete)
        self.assertEqual(len(result), 2)
        by_hash = {c.hash: c for c in result}
        self.assertEqual(by_hash["a" * 40].display_title, "Inception.2010.1080p.BluRay")

    def test_over_bandwidth_flagged_not_dropped(self):
        indexer = FakeIndexer(batches=[[
            _torrent("Inception.2010.1080p.Big", "a", size_gb=8.0),
            _torrent("Inception.2010.1080p.Small", "b", size_gb=2.0),
            _torrent("Inception.2010.1080p.Unknown", "c", size_gb=0),
        ]])
        result = Aggregator(indexer=indexer).search(_movie(max_bitrate_mbps=5))
        by_hash = {c.hash: c for c in result}
        self.assertEqual(len(by_hash), 3)
        self.assertTrue(by_hash["a" * 40].over_bandwidth)
        self.assertGreater(by_hash["a" * 40].estimated_bitrate_mbps, 5)
        self.assertFalse(by_hash["b" * 40].over_bandwidth)
        self.assertFalse(by_hash["c" * 40].over_bandwidth)
        self.assertIsNone(by_hash["c" * 40].estimated_bitrate_mbps)
        self.assertEqual(result[-1].hash, "a" * 40)

    def test_bitrate_at_exact_ceiling_is_not_over(self):
        # 1024 MB over 120 minutes
        ceiling = (1024.0 / 120.0) * 8.0 / 60.0
        indexer = FakeIndexer(batches=[[_torrent("Inception.2010.720p", "a", size_gb=1.0, resolution=720)]])
        result = Aggregator(indexer=indexer).search(_movie(max_bitrate_mbps=ceiling))
        self.assertFalse(result[0].over_bandwidth)

    def test_filters_wrong_year_and_tv_releases(self):
        indexer = FakeIndexer(batches=[[
            _torrent("Inception.2010.1080p", "a"),
            _torrent("Inception.2014.1080p", "b"),
            _torrent("Inception.S01E01.1080p", "c"),
        ]])
        result = Aggregator(indexer=indexer).search(_movie())
        self.assertEqual([c.hash for c in result], ["a" * 40])

    def test_implausible_size_rejected(self):
        # 100 MB for a two hour 1080p movie is below 5 MB/min
        indexer = FakeIndexer(batches=[[
            _torrent("Inception.2010.1080p.Fake", "a", size_gb=100 * MB / GB),
            _torrent("Inception.2010.1080p", "b"),
        ]])
        result = Aggregator(indexer=indexer).search(_movie())
        self.assertEqual([c.hash for c in result], ["b" * 40])

    def test_excluded_hashes_skipped_case_insensitive(self):
        indexer = FakeIndexer(batches=[[_torrent("Inception.2010.1080p", "a"), _torrent("Inception.2010.720p", "b")]])
        result = Aggregator(indexer=indexer).search(_movie(excluded_hashes=["A" * 40]))
        self.assertEqual([c.hash for c in result], ["b" * 40])

    def test_excluded_file_paths_skipped(self):
        path = "/mnt/movies/Inception (2010)/Inception.2010.1080p.mkv"
        fs = FakeFilesystem([_file(path)])
        result = Aggregator(filesystem=fs).search(_movie(excluded_file_paths=[path]))
        self.assertEqual(len(result), 0)

    def test_instant_availability_marks_cached(self):
        indexer = FakeIndexer(batches=[[_torrent("Inception.2010.1080p", "a"), _torrent("Inception.2010.720p", "b")]])
        result = Aggregator(indexer=indexer, availability=FakeAvailability({"b" * 40})).search(_movie())
        by_hash = {c.hash: c for c in result}
        self.assertTrue(by_hash["b" * 40].is_cached)
        self.assertFalse(by_hash["a" * 40].is_cached)
        self.assertEqual(result[0].hash, "b" * 40)

    def test_failed_availability_means_none_cached(self):
        indexer = FakeIndexer(batches=[[_torrent("Inception.2010.1080p", "a")]])
        availability = FakeAvailability({"a" * 40}, error=RuntimeError("down"))
        result = Aggregator(indexer=indexer, availability=availability).search(_movie())
        self.assertFalse(result[0].is_cached)

    def test_bad_links_penalize_without_removing(self):
        bad_links = BadLinkRegistry()
        bad_links.report("a" * 40, "alice")
        indexer = FakeIndexer(batches=[[_torrent("Inception.2010.2160p", "a", size_gb=20, resolution=2160),
                                        _torrent("Inception.2010.720p", "b", resolution=720)]])
        result = Aggregator(indexer=indexer, bad_links=bad_links).search(_movie())
        self.assertEqual([c.hash for c in result], ["b" * 40, "a" * 40])
        self.assertTrue(result[1].is_flagged_bad)

    def test_reports_after_wiring_reach_ranking(self):
        bad_links = BadLinkRegistry()
        indexer = FakeIndexer(batches=[[_torrent("Inception.2010.1080p", "a")]])
        aggregator = Aggregator(indexer=indexer, bad_links=bad_links)
        self.assertIs(aggregator.bad_links, bad_links)

        bad_links.report("a" * 40, "alice")
        result = aggregator.search(_movie())
        self.assertTrue(result[0].is_flagged_bad)

    def test_bad_file_path_flagged(self):
        path = "/mnt/movies/Inception (2010)/Inception.2010.1080p.mkv"
        bad_links = BadLinkRegistry()
        bad_links.report(path, "alice")
        result = Aggregator(filesystem=FakeFilesystem([_file(path)]), bad_links=bad_links).search(_movie())
        self.assertTrue(result[0].is_flagged_bad)

    def test_runtime_lookup_feeds_filesystem_hint(self):
        fs = FakeFilesystem()
        Aggregator(filesystem=fs, runtime_lookup=FixedRuntime(148)).search(_movie(external_id="27205"))
        self.assertEqual(fs.calls[0][-1], 148.0)

    def test_runtime_defaults_when_lookup_missing(self):
        aggregator = Aggregator(runtime_lookup=FixedRuntime(None))
        self.assertEqual(aggregator.resolve_runtime(_movie()), 120.0)
        self.assertEqual(aggregator.resolve_runtime(_episode()), 45.0)

    def test_provider_failures_contribute_nothing(self):
        fs = FakeFilesystem(error=OSError("mount gone"))
        indexer = FakeIndexer(error=RuntimeError("indexer down"))
        failures = []
        bus = EventBus()
        bus.subscribe(Events.PROVIDER_FAILED, failures.append)
        result = Aggregator(filesystem=fs, indexer=indexer, event_bus=bus).search(_movie())
        self.assertTrue(result.is_complete)
        self.assertEqual(len(result), 0)
        self.assertEqual({f["provider"] for f in failures}, {"cache-mount", "indexer"})

    def test_scenario_b_episode_filtering(self):
        indexer = FakeIndexer(batches=[[
            _torrent("Breaking.Bad.S02E05.1080p", "a", size_gb=1.5, seeders=40),
            _torrent("Breaking.Bad.S02.2160p.x265", "b", size_gb=30, seeders=10, resolution=2160),
            _torrent("Breaking.Bad.S02E06.1080p", "c", size_gb=1.5, seeders=90),
        ]])
        result = Aggregator(indexer=indexer).search(_episode())
        self.assertEqual([c.hash for c in result], ["a" * 40, "b" * 40])
        # 1080 + 40 seeders * 10, size at the ideal
        self.assertEqual(result[0].score, 1480)
        # 2160 + 10 seeders * 10 - 50 * (30 - 3)
        self.assertEqual(result[1].score, 910)


class TestAggregatorStream(unittest.TestCase):
    def test_scenario_a_filesystem_first(self):
        path = "/mnt/movies/Inception (2010)/Inception.2010.1080p.mkv"
        gate = threading.Event()
        aggregator = Aggregator(
            filesystem=FakeFilesystem([_file(path)]),
            indexer=FakeIndexer(batches=[[_torrent("Inception.2010.720p", "b", resolution=720)]], gate=gate),
        )
        stream = aggregator.stream(_movie(max_bitrate_mbps=20))
        first = next(stream)
        self.assertFalse(first.is_complete)
        self.assertEqual(len(first), 1)
        self.assertEqual(first.top.source, "cache-mount")
        self.assertTrue(first.top.is_cached)
        self.assertFalse(first.top.over_bandwidth)

        gate.set()
        rest = list(stream)
        self.assertTrue(rest[-1].is_complete)
        self.assertEqual(rest[-1].top.source, "cache-mount")
        self.assertEqual(len(rest[-1]), 2)

    def test_exactly_one_terminal_snapshot(self):
        indexer = FakeIndexer(batches=[
            [_torrent("Inception.2010.1080p", "a")],
            [_torrent("Inception.2010.720p", "b", resolution=720)],
            [],
        ])
        snapshots = list(Aggregator(indexer=indexer).stream(_movie()))
        self.assertEqual(sum(1 for s in snapshots if s.is_complete), 1)
        self.assertTrue(snapshots[-1].is_complete)
        self.assertEqual(len(snapshots[-1]), 2)
        self.assertEqual(len(snapshots[0]), 1)

    def test_ceiling_stops_waiting(self):
        gate = threading.Event()
        aggregator = Aggregator(
            indexer=FakeIndexer(batches=[[_torrent("Inception.2010.1080p", "a")]], gate=gate),
            ceiling_seconds=0.2,
        )
        try:
            snapshots = list(aggregator.stream(_movie()))
        finally:
            gate.set()
        self.assertEqual(len(snapshots), 1)
        self.assertTrue(snapshots[0].is_complete)
        self.assertEqual(len(snapshots[0]), 0)
        self.assertTrue(any("ceiling" in w for w in snapshots[0].warnings))

    def test_snapshots_are_independent_copies(self):
        indexer = FakeIndexer(batches=[[_torrent("Inception.2010.1080p", "a")],
                                       [_torrent("Inception.2010.720p", "b", resolution=720)]])
        snapshots = list(Aggregator(indexer=indexer).stream(_movie()))
        snapshots[0].top.score = -1
        self.assertNotEqual(snapshots[-1][0].score, -1)


if __name__ == "__main__":
    unittest.main()
