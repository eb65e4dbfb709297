import os
import tempfile

# Keep TSV logs out of scripts/ during the test run
os.environ.setdefault("SFB_LOG_DIR", tempfile.mkdtemp(prefix="sft_sequential_logs_"))

import pytest

import sft_sequential


@pytest.fixture
def ledger():
    return sft_sequential.ThoughtLedger()


@pytest.fixture
def quiet(monkeypatch):
    """Silence the stderr thought echo."""
    monkeypatch.setitem(sft_sequential.CONFIG, "echo_thoughts", False)


@pytest.fixture
def echo(monkeypatch):
    monkeypatch.setitem(sft_sequential.CONFIG, "echo_thoughts", True)
