"""Tests for the structured operation logger."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from winprov import __version__
from winprov.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_json_and_human_records(tmp_path: Path) -> None:
    """A successful operation appends one JSON record and one human line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("provision", args={"json": False}, target={"kind": "host"}) as op:
        op.add_step("directories.ensure", status="changed", detail="created C:\\webapp")
        op.add_step("runtime.ensure", status="skipped")
        op.success("Provisioning complete.", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "provision"
    assert record["args"] == {"json": False}
    assert record["target"] == {"kind": "host"}
    assert record["context"]["winprov_version"] == __version__
    steps = record["steps"]
    assert [step["name"] for step in steps] == ["directories.ensure", "runtime.ensure"]
    assert steps[0]["detail"] == "created C:\\webapp"
    assert "detail" not in steps[1]
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 1
    assert record["result"]["rc"] == 0

    human = (tmp_path / "logs" / "winprov.log").read_text(encoding="utf-8")
    assert "SUCCESS provision: Provisioning complete." in human


def test_operation_records_error_when_exception_escapes(tmp_path: Path) -> None:
    """An exception leaving the scope is logged as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="boom"):
        with logger.operation("provision"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["errors"] == ["boom"]
    assert record["result"]["rc"] == 1


def test_operation_without_result_is_a_warning(tmp_path: Path) -> None:
    """Scopes that never report a result are closed as warnings."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("plan"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "warning"
    assert "without reporting a result" in record["result"]["message"]


def test_error_keeps_explicit_exit_code(tmp_path: Path) -> None:
    """``error`` stores the supplied errors and return code."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("provision") as op:
        op.error("Provisioning failed", errors=["nssm install failed"], rc=4)

    (record,) = _records(logger)
    assert record["result"]["errors"] == ["nssm install failed"]
    assert record["result"]["rc"] == 4


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger disables itself when its directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("plan") as op:
        op.success("done")

    assert not log_dir.exists()


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures disable the logger instead of failing the command."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("plan") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("plan") as op:
        op.success("done again")


def test_context_values_are_sanitised(tmp_path: Path) -> None:
    """Non-JSON values in args and context are stringified."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("config show", args={"path": Path("config.yml")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            context={"path": Path("state"), "obj": Custom(), "items": (1, 2)},
        )

    (record,) = _records(logger)
    assert record["args"] == {"path": "config.yml"}
    assert record["result"]["warnings"] == ["note"]
    assert record["result"]["context"] == {"path": "state", "obj": "<custom>", "items": [1, 2]}
