from __future__ import annotations

import pytest

from src.app.settings import Settings


def test_stall_timeout_must_outlast_the_slowest_silent_step() -> None:
    with pytest.raises(ValueError, match="RAG_STALL_TIMEOUT"):
        Settings(stall_timeout=60.0, index_timeout=60.0)


def test_longest_silent_stage_includes_index_backoff() -> None:
    config = Settings(
        stall_timeout=200.0,
        load_timeout=60.0,
        embedding_timeout=30.0,
        index_timeout=60.0,
        index_batch_attempts=3,
        index_batch_backoff=1.0,
    )

    assert config.longest_silent_stage == 62.0


def test_cache_classes_have_their_own_ttls() -> None:
    assert set(Settings().cache_ttls) == {"embedding", "query", "chunks", "stats"}
