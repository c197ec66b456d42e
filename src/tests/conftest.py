from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
import tempfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read at import time, so every default must be in place first.
os.environ.setdefault("RAG_ALLOW_ANONYMOUS", "true")
os.environ["RAG_ANSWERER"] = "extractive"
os.environ.pop("RAG_API_KEYS", None)
os.environ.pop("RAG_API_KEY_MAP", None)
os.environ.pop("OPENAI_API_KEY", None)
os.environ["RAG_VECTORSTORE"] = "memory"
os.environ["RAG_CACHE_BACKEND"] = "memory"
os.environ["EMBEDDING_PROVIDER"] = "hash"
os.environ["EMBEDDING_DIMENSION"] = "256"
os.environ["RAG_JOB_DB_URI"] = "sqlite://"
os.environ["RAG_METADATA_DB_URI"] = "sqlite://"
os.environ["RAG_JOB_BACKOFF_SECONDS"] = "0.01"
os.environ["RAG_STATUS_UPDATE_BACKOFF"] = "0.01"
os.environ.setdefault("RAG_UPLOAD_DIR", tempfile.mkdtemp(prefix="learninghub-uploads-"))

import pytest


@pytest.fixture
def anyio_backend() -> str:
    """The application is built on asyncio; run async tests on that backend only."""
    return "asyncio"
