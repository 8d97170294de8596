"""Tests for structured logging and trace context propagation."""

import asyncio
import io
import json
import logging

import pytest

from flowsync.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from flowsync.observability.logging import HumanReadableFormatter, StructuredFormatter


@pytest.fixture(autouse=True)
def _clean_context():
    clear_trace_context()
    yield
    clear_trace_context()


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("flowsync.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTraceContext:
    def test_set_merges_fields(self):
        set_trace_context(session_id="abc")
        set_trace_context(workflow_id="workflow-1")
        assert get_trace_context() == {"session_id": "abc", "workflow_id": "workflow-1"}

    def test_empty_when_unset(self):
        assert get_trace_context() == {}

    @pytest.mark.asyncio
    async def test_tasks_inherit_but_do_not_leak(self):
        set_trace_context(session_id="abc")

        async def run(workflow_id: str) -> dict:
            set_trace_context(workflow_id=workflow_id)
            await asyncio.sleep(0)
            return get_trace_context()

        first, second = await asyncio.gather(run("w1"), run("w2"))

        assert first == {"session_id": "abc", "workflow_id": "w1"}
        assert second == {"session_id": "abc", "workflow_id": "w2"}
        assert get_trace_context() == {"session_id": "abc"}


class TestFormatters:
    def test_json_includes_context_and_extras(self):
        set_trace_context(session_id="abc", workflow_id="workflow-1")
        entry = json.loads(
            StructuredFormatter().format(_record("\033[32mflushed\033[0m", batch_size=4))
        )
        assert entry["message"] == "flushed"
        assert entry["level"] == "info"
        assert entry["session_id"] == "abc"
        assert entry["workflow_id"] == "workflow-1"
        assert entry["batch_size"] == 4
        assert "queue_key" not in entry

    def test_human_prefix(self):
        set_trace_context(session_id="0123456789abcdef", workflow_id="workflow-1")
        line = HumanReadableFormatter().format(_record("hello"))
        assert "[session:01234567 | wf:workflow-1] hello" in line


class TestConfigureLogging:
    def test_json_mode_writes_one_object_per_line(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        stream = io.StringIO()
        try:
            configure_logging(level="debug", format="json", stream=stream)
            set_trace_context(session_id="abc")
            logging.getLogger("flowsync.test").info("hello", extra={"queue_key": "abc:w"})
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        entry = json.loads(stream.getvalue().strip())
        assert entry["message"] == "hello"
        assert entry["session_id"] == "abc"
        assert entry["queue_key"] == "abc:w"
