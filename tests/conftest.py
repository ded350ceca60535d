import os
import sys

import pytest
from fastapi.testclient import TestClient

from extractor import Extractor
from pipeline import SessionRegistry

FAKE_YTDLP = os.path.join(os.path.dirname(__file__), "fake_ytdlp.py")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def args_log(tmp_path, monkeypatch):
    path = tmp_path / "args.jsonl"
    monkeypatch.setenv("FAKE_YTDLP_ARGS_LOG", str(path))
    return path


@pytest.fixture
def fake_extractor():
    return Extractor(
        [sys.executable, FAKE_YTDLP],
        metadata_timeout=10,
        title_timeout=5,
        chunk_size=4096,
        registry=SessionRegistry(),
    )


@pytest.fixture
def client(fake_extractor):
    import server

    server.app.dependency_overrides[server.get_extractor] = lambda: fake_extractor
    try:
        yield TestClient(server.app)
    finally:
        server.app.dependency_overrides.clear()
