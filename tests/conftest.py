"""Shared test fixtures for the mdview test suite."""

import pytest


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Point the registry at a per-test data directory."""
    d = tmp_path / "data"
    monkeypatch.setenv("MDVIEW_DATA_DIR", str(d))
    return d


@pytest.fixture
def md_file(tmp_path):
    """A small Markdown document in its own directory."""
    docs = tmp_path / "docs"
    docs.mkdir()
    path = docs / "README.md"
    path.write_text("# Hello\n\nSome *text*.\n")
    return path.resolve()
