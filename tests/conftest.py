"""
Pytest configuration and shared fixtures for PAR CC Ingest tests.
"""

import json
import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from par_cc_ingest.config import Config
from par_cc_ingest.models import SessionBlock, UsageEntry


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mock_config(temp_dir):
    """Create a configuration pointing at temporary paths."""
    projects_dir = temp_dir / "claude" / "projects"
    projects_dir.mkdir(parents=True)
    return Config(
        projects_dir=projects_dir,
        cache_dir=temp_dir / "cache",
        hours_back=None,
        fetch_pricing=False,
        polling_interval=1,
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove configuration environment variables for the test."""
    for key in list(os.environ):
        if key.startswith("PAR_CC_INGEST_") or key == "CLAUDE_CONFIG_DIR":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def sample_timestamp():
    """Provide a consistent timestamp for testing."""
    return datetime(2025, 1, 9, 14, 30, 45, tzinfo=UTC)


def make_record(
    timestamp,
    message_id="msg_1",
    request_id="req_1",
    model="claude-3-5-sonnet-20241022",
    input_tokens=100,
    output_tokens=50,
    cost_usd=None,
    **usage_extra,
):
    """Build a Claude Code assistant record."""
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat().replace("+00:00", "Z")
    record = {
        "type": "assistant",
        "timestamp": timestamp,
        "requestId": request_id,
        "sessionId": "session_1",
        "message": {
            "id": message_id,
            "model": model,
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens, **usage_extra},
        },
    }
    if cost_usd is not None:
        record["costUSD"] = cost_usd
    return record


def write_jsonl(path, records):
    """Write records (dicts or raw strings) as JSON lines."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(record if isinstance(record, str) else json.dumps(record))
            f.write("\n")
    return path


@pytest.fixture
def record_factory():
    """Expose make_record to tests."""
    return make_record


@pytest.fixture
def jsonl_writer():
    """Expose write_jsonl to tests."""
    return write_jsonl


@pytest.fixture
def sample_jsonl_lines(sample_timestamp):
    """Provide sample JSONL lines covering the supported shapes."""
    return [
        json.dumps(make_record(sample_timestamp, "msg_1", "req_1", cost_usd=0.01)),
        json.dumps({"type": "user", "timestamp": "2025-01-09T14:31:00Z", "message": {"content": "Hello"}}),
        json.dumps({
            "timestamp": "2025-01-09T14:32:00Z",
            "request_id": "req_2",
            "request": {"model": "claude-3-opus-latest"},
            "response": {"id": "msg_2", "usage": {"input_tokens": 200, "output_tokens": 80}},
        }),
        "not json at all",
        "",
    ]


@pytest.fixture
def sample_entry(sample_timestamp):
    """Create a sample UsageEntry."""
    return UsageEntry(
        timestamp=sample_timestamp,
        input_tokens=1000,
        output_tokens=500,
        cache_creation_input_tokens=50,
        cache_read_input_tokens=100,
        cost_usd=0.0123,
        model="sonnet",
        full_model_name="claude-3-5-sonnet-20241022",
        message_id="msg_123",
        request_id="req_456",
        project="my-project",
        session_id="session_123",
    )


@pytest.fixture
def active_block():
    """Create a session block that is currently active."""
    start = datetime.now(UTC).replace(minute=0, second=0, microsecond=0) - timedelta(hours=1)
    return SessionBlock(
        id=start.isoformat(),
        start_time=start,
        end_time=start + timedelta(hours=5),
        is_active=True,
    )
