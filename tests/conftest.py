"""
Pytest configuration and fixtures for slm-router tests.
"""

import sys
from pathlib import Path

import pytest

# Add project root (package) and tests dir (shared fakes) to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from slm_router.config import RouterConfig
from slm_router.memory import MemoryAdapter, SQLiteMemoryBackend
from slm_router.router import SLMRouter

from router_fakes import FakeRemoteClient, FakeRunner, InMemoryBackend, model_json


@pytest.fixture
def router_config(tmp_path):
    """Config with logging and knowledge base off and memory in a temp dir."""
    config = RouterConfig()
    config.memory.db_path = str(tmp_path / "memory.db")
    config.telemetry.log_path = str(tmp_path / "decisions.jsonl")
    return config


@pytest.fixture
def memory_backend():
    """In-memory fake memory backend."""
    return InMemoryBackend()


@pytest.fixture
def memory(memory_backend):
    """Memory adapter over the fake backend."""
    return MemoryAdapter(memory_backend)


@pytest.fixture
def temp_db_path(tmp_path):
    """Path for a temporary SQLite database."""
    return str(tmp_path / "routing-memory.db")


@pytest.fixture
def sqlite_backend(temp_db_path):
    """SQLite memory backend in a temp directory."""
    return SQLiteMemoryBackend(db_path=temp_db_path)


@pytest.fixture
def make_router(router_config, memory_backend):
    """
    Factory for routers wired to fakes.

    Usage:
        router = make_router(local_response=model_json("toll_estimate"))
    """

    def _make(
        local_response=None,
        runner=None,
        remote=None,
        backend=memory_backend,
        knowledge_base=None,
        config=None,
    ):
        if runner is None:
            runner = FakeRunner(local_response if local_response is not None else model_json(None, confidence=0.0))
        return SLMRouter.from_config(
            config or router_config,
            memory_backend=backend,
            knowledge_base=knowledge_base,
            local_runner=runner,
            remote_client=remote or FakeRemoteClient(),
        )

    return _make


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep router environment variables from leaking into tests."""
    for name in (
        "OLLAMA_URL",
        "OLLAMA_MODEL",
        "AI_PROXY_URL",
        "AI_PROXY_MODEL",
        "AI_PROXY_API_KEY",
        "AI_PROVIDER",
        "CONFIDENCE_THRESHOLD",
        "SLM_MEMORY_DB",
        "SLM_MAX_CONCURRENCY",
        "ENABLE_EON_MEMORY",
        "ENABLE_KNOWLEDGE_BASE",
    ):
        monkeypatch.delenv(name, raising=False)


# Markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "hypothesis: property-based tests")
    config.addinivalue_line("markers", "slow: tests that take >1s")
