from digitnet.repository.score_cache import (
    InMemoryScoreCache,
    ScoreCache,
    SqliteScoreCache,
    get_score_cache,
    purge_scorer,
)

__all__ = [
    "InMemoryScoreCache",
    "ScoreCache",
    "SqliteScoreCache",
    "get_score_cache",
    "purge_scorer",
]
