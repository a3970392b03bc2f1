"""Unit tests for per-call record sinks."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from recurgent.observability.call_log import CallRecord, InMemoryCallLog, JsonLinesCallLog

if TYPE_CHECKING:
    from pathlib import Path


def _record(method: str = "add", **fields: object) -> CallRecord:
    record = CallRecord(
        role="calc",
        method=method,
        trace_id="trace-1",
        call_id=f"call-{method}",
        parent_call_id=None,
        depth=0,
    )
    for key, value in fields.items():
        setattr(record, key, value)
    return record


def test_record_defaults() -> None:
    record = _record()

    assert record.runtime == "python"
    assert record.timestamp.endswith("Z")
    assert record.contract_applied is False
    assert record.to_dict()["dependencies"] == []


def test_in_memory_log_collects_records_across_threads() -> None:
    log = InMemoryCallLog()

    threads = [
        threading.Thread(target=log.emit, args=(_record(f"m{index}"),)) for index in range(20)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(log) == 20
    assert {record.method for record in log} == {f"m{index}" for index in range(20)}


def test_json_lines_log_appends_one_object_per_call(tmp_path: Path) -> None:
    log = JsonLinesCallLog(tmp_path / "logs" / "calls.jsonl")

    log.emit(_record("add", outcome_status="ok", artifact_checksum="abc"))
    log.emit(
        _record(
            "div",
            outcome_status="error",
            error_type="execution",
            retriable=False,
            environment_cache_hit=True,
        )
    )

    rows = log.read()
    assert [row["method"] for row in rows] == ["add", "div"]
    assert rows[0]["artifact_checksum"] == "abc"
    assert rows[1]["error_type"] == "execution"
    assert rows[1]["environment_cache_hit"] is True
    assert len(log.path.read_text(encoding="utf-8").splitlines()) == 2


def test_json_lines_log_read_missing_file_is_empty(tmp_path: Path) -> None:
    log = JsonLinesCallLog(tmp_path / "calls.jsonl")

    assert log.read() == []
