from __future__ import annotations

import threading
from pathlib import Path

from conftest import INVALID_SOURCE, VALID_SOURCE, FakeToolchain

from caraml_playground.db.models import JobStatus
from caraml_playground.jobs.types import ClaimedJob
from caraml_playground.storage.artifacts import LocalArtifactStore
from caraml_playground.worker.pipeline import CompilationPipeline
from caraml_playground.worker.unit import JOB_TIMEOUT_ERROR, ExecutionUnit, OutcomeKind


def make_unit(tmp_path: Path, compiler: Path) -> ExecutionUnit:
    pipeline = CompilationPipeline(
        store=LocalArtifactStore(tmp_path / "artifacts"),
        scratch_root=tmp_path / "scratch",
        compiler_bin=compiler.as_posix(),
        backend_bin=(tmp_path / "bin" / "emcc").as_posix(),
        compile_timeout_seconds=30.0,
        backend_timeout_seconds=10.0,
    )
    unit = ExecutionUnit(pipeline, name="unit-test", log_level="DEBUG")
    unit.start()
    return unit


def job(job_id: str, source: str) -> ClaimedJob:
    return ClaimedJob(id=job_id, source_code=source, status=JobStatus.RUNNING)


def test_unit_reports_results_and_serves_multiple_jobs(tmp_path: Path, toolchain: FakeToolchain) -> None:
    unit = make_unit(tmp_path, toolchain.compiler)
    try:
        first = unit.run(job("unit-ok", VALID_SOURCE), timeout_seconds=20)
        second = unit.run(job("unit-bad", INVALID_SOURCE), timeout_seconds=20)

        assert first.kind == OutcomeKind.COMPLETED
        assert first.unit_lost is False
        assert first.result.success is True
        assert first.result.artifacts is not None
        assert first.result.artifacts.wasm == "unit-ok.wasm"

        assert second.kind == OutcomeKind.COMPLETED
        assert second.result.success is False
        assert second.result.error is not None
        assert "expected a declaration" in second.result.error
        assert unit.is_alive()
    finally:
        unit.stop()

    assert not unit.is_alive()
    assert unit.pid is None


def test_unit_crash_is_reported_as_termination(tmp_path: Path, toolchain: FakeToolchain) -> None:
    crasher = toolchain.write("caraml-crash", "#!/bin/sh\nkill -9 $PPID\nsleep 5\n")
    unit = make_unit(tmp_path, crasher)
    try:
        outcome = unit.run(job("unit-crash", VALID_SOURCE), timeout_seconds=20)
    finally:
        unit.terminate()

    assert outcome.kind == OutcomeKind.TERMINATED
    assert outcome.unit_lost is True
    assert outcome.result.success is False
    assert outcome.result.error is not None
    assert outcome.result.error.startswith("unit exited prematurely")


def test_unit_timeout_kills_the_unit(tmp_path: Path, toolchain: FakeToolchain) -> None:
    hanging = toolchain.write("caraml-hang", "#!/bin/sh\nexec sleep 10\n")
    unit = make_unit(tmp_path, hanging)
    try:
        outcome = unit.run(job("unit-hang", VALID_SOURCE), timeout_seconds=1.0)

        assert outcome.kind == OutcomeKind.TIMED_OUT
        assert outcome.unit_lost is True
        assert outcome.result.error == JOB_TIMEOUT_ERROR
        assert not unit.is_alive()
    finally:
        unit.terminate()


def test_unit_state_is_readable_while_it_is_torn_down(tmp_path: Path, toolchain: FakeToolchain) -> None:
    hanging = toolchain.write("caraml-hang", "#!/bin/sh\nexec sleep 10\n")
    unit = make_unit(tmp_path, hanging)
    stop = threading.Event()
    errors: list[Exception] = []

    def observe() -> None:
        while not stop.is_set():
            try:
                unit.is_alive()
                _ = unit.pid
            except Exception as exc:
                errors.append(exc)
                return

    observer = threading.Thread(target=observe, daemon=True)
    observer.start()
    try:
        outcome = unit.run(job("unit-observed", VALID_SOURCE), timeout_seconds=1.0)
    finally:
        stop.set()
        observer.join(timeout=5)
        unit.terminate()

    assert outcome.kind == OutcomeKind.TIMED_OUT
    assert errors == []
    assert not unit.is_alive()
    assert unit.pid is None
