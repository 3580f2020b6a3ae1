"""
Tests for the score cache repositories and the memoizing scorer in front of them.
"""

import sqlite3
import threading

import numpy as np
import pytest

from conftest import FixedScorer, one_hot
from digitnet.config.settings import Settings
from digitnet.errors import CacheError
from digitnet.pipelines.scorers import LookupStatus, MemoizingScorer
from digitnet.repository.score_cache import (
    InMemoryScoreCache,
    SqliteScoreCache,
    get_score_cache,
    purge_scorer,
    reset_score_cache,
)


@pytest.fixture
def sqlite_cache(tmp_path):
    """Create a fresh SQLite score cache in a temp directory."""
    cache = SqliteScoreCache(db_path=str(tmp_path / "cache" / "scores.db"))
    yield cache
    cache.close()


@pytest.fixture(params=["sqlite", "memory"])
def any_cache(request, tmp_path):
    if request.param == "memory":
        return InMemoryScoreCache()
    return SqliteScoreCache(db_path=str(tmp_path / "scores.db"))


class BrokenCache(InMemoryScoreCache):
    def get(self, image_id, scorer_type, scorer_version):
        raise CacheError("disk on fire")

    def put(self, image_id, scorer_type, scorer_version, scores):
        raise CacheError("disk on fire")


class UnreachableCache(InMemoryScoreCache):
    """Backend whose host is down: raises its own exception types, not CacheError."""

    def get(self, image_id, scorer_type, scorer_version):
        raise ConnectionError("cache host down")


class ReadOnlyCache(InMemoryScoreCache):
    def put(self, image_id, scorer_type, scorer_version, scores):
        raise OSError("read-only file system")


# ============================================================================
# REPOSITORY
# ============================================================================

class TestScoreCacheBackends:
    def test_miss_returns_none(self, any_cache):
        assert any_cache.get("img", "row", "v1") is None

    def test_put_then_get(self, any_cache):
        scores = [0.1 * i for i in range(10)]
        any_cache.put("img", "row", "v1", scores)
        assert any_cache.get("img", "row", "v1").tolist() == scores

    def test_upsert_keeps_last_value(self, any_cache):
        any_cache.put("img", "row", "v1", [1.0] * 10)
        any_cache.put("img", "row", "v1", [2.0] * 10)
        assert any_cache.get("img", "row", "v1").tolist() == [2.0] * 10
        assert any_cache.count() == 1

    def test_versions_are_separate_keys(self, any_cache):
        any_cache.put("img", "row", "v1", [1.0] * 10)
        assert any_cache.get("img", "row", "v2") is None

    def test_delete_by_scorer(self, any_cache):
        any_cache.put("a", "row", "v1", [1.0] * 10)
        any_cache.put("b", "row", "v1", [1.0] * 10)
        any_cache.put("a", "row", "v2", [1.0] * 10)
        any_cache.put("a", "col", "v1", [1.0] * 10)

        assert purge_scorer(any_cache, "row", "v1") == 2
        assert any_cache.get("a", "row", "v1") is None
        assert any_cache.get("a", "row", "v2") is not None
        assert any_cache.count() == 2

    def test_delete_by_image(self, any_cache):
        any_cache.put("a", "row", "v1", [1.0] * 10)
        any_cache.put("a", "col", "v1", [1.0] * 10)
        any_cache.put("b", "row", "v1", [1.0] * 10)
        assert any_cache.delete_by_image("a") == 2
        assert any_cache.count() == 1


class TestSqliteScoreCache:
    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "scores.db")
        SqliteScoreCache(path).put("img", "row", "v1", [3.0] * 10)
        assert SqliteScoreCache(path).get("img", "row", "v1").tolist() == [3.0] * 10

    def test_blob_is_big_endian_float64(self, sqlite_cache):
        sqlite_cache.put("img", "row", "v1", [1.0] + [0.0] * 9)
        conn = sqlite3.connect(str(sqlite_cache.db_path))
        blob = conn.execute("SELECT scores_blob FROM score_result").fetchone()[0]
        conn.close()
        assert len(blob) == 80
        assert blob[:8] == bytes([0x3F, 0xF0, 0, 0, 0, 0, 0, 0])

    def test_corrupt_blob_raises_cache_error(self, sqlite_cache):
        conn = sqlite3.connect(str(sqlite_cache.db_path))
        with conn:
            conn.execute(
                "INSERT INTO score_result (image_id, scorer_type, scorer_version, scores_blob, created_ts) "
                "VALUES ('img', 'row', 'v1', X'0102', 0)"
            )
        conn.close()
        with pytest.raises(CacheError):
            sqlite_cache.get("img", "row", "v1")

    def test_backend_failure_raises_cache_error(self, sqlite_cache):
        conn = sqlite3.connect(str(sqlite_cache.db_path))
        with conn:
            conn.execute("DROP TABLE score_result")
        conn.close()
        with pytest.raises(CacheError):
            sqlite_cache.get("img", "row", "v1")
        with pytest.raises(CacheError):
            sqlite_cache.put("img", "row", "v1", [0.0] * 10)

    def test_close_releases_worker_connections(self, sqlite_cache):
        from concurrent.futures import ThreadPoolExecutor

        def read(i):
            return sqlite_cache.get(f"img{i}", "row", "v1")

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(read, range(16)))
        opened = list(sqlite_cache._connections)
        assert len(opened) >= 2

        sqlite_cache.close()

        assert sqlite_cache._connections == []
        for conn in opened:
            with pytest.raises(sqlite3.ProgrammingError):
                conn.execute("SELECT 1")
        sqlite_cache.put("img", "row", "v1", [1.0] * 10)
        assert sqlite_cache.count() == 1

    def test_concurrent_writers(self, sqlite_cache):
        def writer(n):
            for i in range(20):
                sqlite_cache.put(f"img{i}", "row", "v1", [float(n)] * 10)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sqlite_cache.count() == 20


class TestScoreCacheFactory:
    def setup_method(self):
        reset_score_cache()

    def teardown_method(self):
        reset_score_cache()

    def test_disabled_returns_none(self, tmp_path):
        settings = Settings(cache_db_path=str(tmp_path / "x.db"), cache_enabled=False)
        assert get_score_cache(settings) is None

    def test_singleton(self, tmp_path):
        settings = Settings(cache_db_path=str(tmp_path / "x.db"))
        assert get_score_cache(settings) is get_score_cache(settings)

    def test_settings_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DIGITNET_CACHE_DB", str(tmp_path / "env.db"))
        monkeypatch.setenv("DIGITNET_CACHE_ENABLED", "false")
        settings = Settings.from_env()
        assert settings.cache_db_path.endswith("env.db")
        assert settings.cache_enabled is False


# ============================================================================
# MEMOIZING SCORER
# ============================================================================

class TestMemoizingScorer:
    def test_second_call_is_a_hit(self, blank_image):
        scorer = FixedScorer("row", one_hot(3))
        memo = MemoizingScorer(scorer, InMemoryScoreCache())

        first = memo.evaluate(blank_image)
        second = memo.evaluate(blank_image)

        assert scorer.calls == 1
        assert np.array_equal(first, second)

    def test_cleared_cache_recomputes(self, blank_image):
        cache = InMemoryScoreCache()
        scorer = FixedScorer("row", one_hot(3))
        memo = MemoizingScorer(scorer, cache)
        memo.evaluate(blank_image)
        purge_scorer(cache, "row", "v1")
        memo.evaluate(blank_image)
        assert scorer.calls == 2

    def test_hit_returns_stored_vector_without_computing(self, blank_image):
        cache = InMemoryScoreCache()
        cache.put(blank_image.identity, "row", "v1", one_hot(7))
        scorer = FixedScorer("row", one_hot(3))

        scores = MemoizingScorer(scorer, cache).evaluate(blank_image)

        assert int(np.argmax(scores)) == 7
        assert scorer.calls == 0

    def test_version_bump_recomputes(self, blank_image):
        cache = InMemoryScoreCache()
        MemoizingScorer(FixedScorer("row", one_hot(3), version="v1"), cache).evaluate(blank_image)
        scorer_v2 = FixedScorer("row", one_hot(4), version="v2")
        scores = MemoizingScorer(scorer_v2, cache).evaluate(blank_image)
        assert scorer_v2.calls == 1
        assert int(np.argmax(scores)) == 4

    def test_no_identity_computes_every_time(self):
        from digitnet.schemas.digit import DigitImage

        image = DigitImage(np.zeros((28, 28)))
        cache = InMemoryScoreCache()
        scorer = FixedScorer("row", one_hot(3))
        memo = MemoizingScorer(scorer, cache)
        memo.evaluate(image)
        memo.evaluate(image)
        assert scorer.calls == 2
        assert cache.count() == 0

    def test_explicit_image_id_overrides_identity(self, blank_image):
        cache = InMemoryScoreCache()
        MemoizingScorer(FixedScorer("row", one_hot(3)), cache).evaluate(blank_image, image_id="other")
        assert cache.get("other", "row", "v1") is not None
        assert cache.get(blank_image.identity, "row", "v1") is None

    def test_cache_error_computes_and_does_not_store(self, blank_image):
        scorer = FixedScorer("row", one_hot(3))
        memo = MemoizingScorer(scorer, BrokenCache())
        scores = memo.evaluate(blank_image)
        assert int(np.argmax(scores)) == 3
        assert scorer.calls == 1

    def test_backend_read_fault_falls_back(self, blank_image):
        scorer = FixedScorer("row", one_hot(3))
        memo = MemoizingScorer(scorer, UnreachableCache())
        scores = memo.evaluate(blank_image)
        assert int(np.argmax(scores)) == 3
        assert scorer.calls == 1
        assert memo._lookup(blank_image.identity).status == LookupStatus.ERROR

    def test_backend_write_fault_is_not_raised(self, blank_image):
        cache = ReadOnlyCache()
        scorer = FixedScorer("row", one_hot(3))
        memo = MemoizingScorer(scorer, cache)
        assert int(np.argmax(memo.evaluate(blank_image))) == 3
        assert int(np.argmax(memo.evaluate(blank_image))) == 3
        assert scorer.calls == 2
        assert cache.count() == 0

    def test_lookup_status(self, blank_image):
        cache = InMemoryScoreCache()
        memo = MemoizingScorer(FixedScorer("row", one_hot(3)), cache)
        assert memo._lookup(blank_image.identity).status == LookupStatus.MISS
        memo.evaluate(blank_image)
        assert memo._lookup(blank_image.identity).status == LookupStatus.HIT
        assert MemoizingScorer(memo.scorer, BrokenCache())._lookup("x").status == LookupStatus.ERROR

    def test_malformed_cached_vector_is_not_trusted(self, blank_image):
        cache = InMemoryScoreCache()
        cache.put(blank_image.identity, "row", "v1", [1.0] * 5)
        scorer = FixedScorer("row", one_hot(3))
        scores = MemoizingScorer(scorer, cache).evaluate(blank_image)
        assert scorer.calls == 1
        assert int(np.argmax(scores)) == 3
        assert len(cache.get(blank_image.identity, "row", "v1")) == 5

    def test_wrong_length_from_scorer_raises(self, blank_image):
        from digitnet.errors import ScoreShapeError

        memo = MemoizingScorer(FixedScorer("row", [1.0] * 9), InMemoryScoreCache())
        with pytest.raises(ScoreShapeError):
            memo.evaluate(blank_image)
