import os
import shutil
import tempfile
import unittest

from resolvarr.models.content_request import MediaType
from resolvarr.sources.cache_mount import CacheMountProvider


class _Settings:
    def __init__(self, **values):
        self.data = dict(values)

    def get(self, key, default=None):
        return self.data.get(key, default)


class TestCacheMountProvider(unittest.TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self._touch("movies/Inception (2010)/Inception.2010.1080p.mkv", 2048)
        self._touch("movies/Inception (2010)/Inception.2010.1080p.nfo", 10)
        self._touch("movies/Other Film (2011)/Other.Film.2011.1080p.mkv", 1024)
        self._touch("shows/Breaking Bad/Season 2/Breaking.Bad.S02E05.1080p.mkv", 1024)
        self._touch("shows/Breaking Bad/Season 2/Breaking.Bad.S02E06.1080p.mkv", 1024)
        self._touch("__all__/Breaking.Bad.S02.Pack/Breaking.Bad.S02E04-E06.720p.mp4", 512)
        self.provider = CacheMountProvider(_Settings(cache_mount_path=self.root))

    def _touch(self, relative, size):
        path = os.path.join(self.root, *relative.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(b"\0" * size)
        return path

    def test_movie_search(self):
        results = self.provider.search("Inception", 2010, MediaType.MOVIE)
        self.assertEqual(len(results), 1)
        candidate = results[0]
        self.assertTrue(candidate.is_cached)
        self.assertEqual(candidate.resolution, 1080)
        self.assertEqual(candidate.display_title, "Inception (2010)")
        self.assertTrue(candidate.file_path.endswith("Inception.2010.1080p.mkv"))
        self.assertEqual(candidate.source, "cache-mount")

    def test_episode_search_includes_multi_episode_files(self):
        results = self.provider.search("Breaking Bad", None, MediaType.TV, season=2, episode=5)
        names = sorted(c.file_name for c in results)
        self.assertEqual(names, ["Breaking.Bad.S02E04-E06.720p.mp4", "Breaking.Bad.S02E05.1080p.mkv"])

    def test_quality_threshold_uses_runtime(self):
        big = self._touch("movies/Big Movie (2020)/Big.Movie.2020.2160p.mkv", 8 * 1024 * 1024)
        results = self.provider.search("Big Movie", 2020, MediaType.MOVIE, duration_hint_min=1)
        self.assertEqual([c.file_path for c in results], [big])
        self.assertEqual(results[0].mb_per_minute, 8.0)
        self.assertTrue(results[0].meets_quality_threshold)

    def test_unconfigured_or_missing_mount(self):
        self.assertEqual(CacheMountProvider(_Settings()).search("Inception", 2010, MediaType.MOVIE), [])
        missing = CacheMountProvider(_Settings(cache_mount_path=os.path.join(self.root, "nope")))
        self.assertEqual(missing.search("Inception", 2010, MediaType.MOVIE), [])
        self.assertIn("not accessible", missing.last_error)
        self.assertFalse(missing.healthcheck()["ok"])


if __name__ == "__main__":
    unittest.main()
