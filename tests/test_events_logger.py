"""
tests/test_events_logger.py — EventBus dispatch and the JSONL structured logger.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from healthroute.core import logger as logger_module
from healthroute.core.events import ON_MODEL_STATE, EventBus
from healthroute.core.logger import HRLogger, configure_logger


class TestEventBus:
    def test_callbacks_in_registration_order(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        bus.subscribe(ON_MODEL_STATE, lambda p: seen.append(f"a:{p}"))
        bus.subscribe(ON_MODEL_STATE, lambda p: seen.append(f"b:{p}"))
        bus.publish(ON_MODEL_STATE, "READY")
        assert seen == ["a:READY", "b:READY"]

    def test_failing_callback_does_not_stop_others(self) -> None:
        bus = EventBus()
        seen: list[object] = []

        def _broken(payload: object) -> None:
            raise RuntimeError("observer bug")

        bus.subscribe(ON_MODEL_STATE, _broken)
        bus.subscribe(ON_MODEL_STATE, seen.append)
        bus.publish(ON_MODEL_STATE, 1)
        assert seen == [1]

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        seen: list[object] = []
        unsubscribe = bus.subscribe(ON_MODEL_STATE, seen.append)
        unsubscribe()
        unsubscribe()
        bus.publish(ON_MODEL_STATE, 1)
        assert seen == []


def _entries(log_dir: Path) -> list[dict]:
    lines = []
    for path in sorted(log_dir.glob("healthroute_*.jsonl")):
        lines.extend(path.read_text(encoding="utf-8").splitlines())
    return [json.loads(line) for line in lines]


class TestHRLogger:
    def test_writes_jsonl_entries(self, tmp_path: Path) -> None:
        log = HRLogger(tmp_path)
        log.info("download", "file_done", {"file": "tokenizer.json"})
        log.perf("router", "respond_done", latency_ms=812.41234, data={"backend": "local"})
        log.close()

        entries = _entries(tmp_path)
        assert entries[0]["event"] == "startup"
        info, perf = entries[1], entries[2]
        assert info["level"] == "INFO"
        assert info["data"] == {"file": "tokenizer.json"}
        assert "latency_ms" not in info
        assert perf["level"] == "PERF"
        assert perf["latency_ms"] == pytest.approx(812.412)

    def test_write_after_close_reopens(self, tmp_path: Path) -> None:
        log = HRLogger(tmp_path)
        log.close()
        log.warn("lifecycle", "memory_warning_unload", {"available_mb": 150})
        log.close()
        assert _entries(tmp_path)[-1]["level"] == "WARN"

    def test_configure_logger_env_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(logger_module, "_instance", None)
        monkeypatch.setenv("HEALTHROUTE_LOG_DIR", str(tmp_path / "env"))
        log = configure_logger(tmp_path / "configured")
        assert log.log_dir == tmp_path / "env"
        assert configure_logger(tmp_path / "configured") is log
        log.close()

    def test_configure_logger_moves_instance(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(logger_module, "_instance", None)
        monkeypatch.delenv("HEALTHROUTE_LOG_DIR", raising=False)
        first = configure_logger(tmp_path / "one")
        second = configure_logger(tmp_path / "two")
        assert second is not first
        assert logger_module.get_logger() is second
        assert (tmp_path / "two").is_dir()
        second.close()
