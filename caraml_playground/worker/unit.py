from __future__ import annotations

import logging
import multiprocessing
import os
import signal
import threading
import time
from dataclasses import dataclass
from enum import Enum
from multiprocessing.connection import Connection, wait

from caraml_playground.core.logging import configure_logging
from caraml_playground.jobs.types import ClaimedJob
from caraml_playground.worker.pipeline import CompilationPipeline, ExecutionResult

logger = logging.getLogger(__name__)

JOB_TIMEOUT_ERROR = "job timeout"
_TERMINATE_GRACE_SECONDS = 2.0


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    TERMINATED = "terminated"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class UnitOutcome:
    kind: OutcomeKind
    result: ExecutionResult

    @property
    def unit_lost(self) -> bool:
        return self.kind != OutcomeKind.COMPLETED


def _unit_main(conn: Connection, pipeline: CompilationPipeline, log_level: str) -> None:
    # Tools started by the pipeline inherit this group, so the parent can
    # reap them with a single killpg when the unit is lost.
    os.setsid()
    configure_logging(log_level)
    while True:
        try:
            job = conn.recv()
        except EOFError:
            return
        if job is None:
            return
        try:
            result = pipeline.run(job)
        except Exception as exc:
            logger.exception("[unit %s] unexpected error", job.id)
            result = ExecutionResult(success=False, error=f"unexpected unit error: {exc}")
        conn.send(result)


def _kill_process_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError as exc:
        logger.warning("Could not kill process group %d: %s", pgid, exc)


class ExecutionUnit:
    """One isolated child process running the compilation pipeline for one job
    at a time. ``run`` races the result message against process exit and the
    job timeout."""

    def __init__(
        self,
        pipeline: CompilationPipeline,
        *,
        name: str,
        start_method: str = "spawn",
        log_level: str = "INFO",
    ):
        self._pipeline = pipeline
        self._name = name
        self._context = multiprocessing.get_context(start_method)
        self._log_level = log_level
        self._lock = threading.Lock()
        self._process: multiprocessing.process.BaseProcess | None = None
        self._conn: Connection | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def pid(self) -> int | None:
        with self._lock:
            return None if self._process is None else self._process.pid

    def is_alive(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.is_alive()

    def start(self) -> None:
        parent_conn, child_conn = self._context.Pipe(duplex=True)
        process = self._context.Process(
            target=_unit_main,
            args=(child_conn, self._pipeline, self._log_level),
            name=self._name,
            daemon=True,
        )
        process.start()
        child_conn.close()
        with self._lock:
            self._process = process
            self._conn = parent_conn
        logger.debug("Started %s (pid=%s)", self._name, process.pid)

    def run(self, job: ClaimedJob, timeout_seconds: float) -> UnitOutcome:
        with self._lock:
            process = self._process
            conn = self._conn
        if process is None or conn is None:
            raise RuntimeError(f"{self._name} has not been started")

        try:
            conn.send(job)
        except (BrokenPipeError, EOFError, OSError):
            return self._terminated_outcome(process)

        deadline = time.monotonic() + timeout_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("%s exceeded %.1fs on job %s, terminating", self._name, timeout_seconds, job.id)
                self.terminate()
                return UnitOutcome(
                    kind=OutcomeKind.TIMED_OUT,
                    result=ExecutionResult(success=False, error=JOB_TIMEOUT_ERROR),
                )

            ready = wait([conn, process.sentinel], timeout=remaining)
            if conn in ready or conn.poll():
                try:
                    result = conn.recv()
                except (EOFError, OSError):
                    return self._terminated_outcome(process)
                return UnitOutcome(kind=OutcomeKind.COMPLETED, result=result)
            if process.sentinel in ready:
                return self._terminated_outcome(process)

    def _terminated_outcome(self, process: multiprocessing.process.BaseProcess) -> UnitOutcome:
        # The exited unit is not reaped yet, so its pid still names its group.
        _kill_process_group(process.pid)
        process.join(timeout=_TERMINATE_GRACE_SECONDS)
        return UnitOutcome(
            kind=OutcomeKind.TERMINATED,
            result=ExecutionResult(success=False, error=f"unit exited prematurely (exit code {process.exitcode})"),
        )

    def terminate(self) -> None:
        with self._lock:
            process = self._process
            conn = self._conn
            self._process = None
            self._conn = None
        if process is None:
            return
        if process.exitcode is None:
            _kill_process_group(process.pid)
            process.kill()
        process.join()
        if conn is not None:
            conn.close()
        process.close()

    def kill(self) -> None:
        with self._lock:
            process = self._process
            if process is not None and process.is_alive():
                _kill_process_group(process.pid)

    def stop(self) -> None:
        with self._lock:
            process = self._process
            conn = self._conn
        if conn is not None and process is not None and process.is_alive():
            try:
                conn.send(None)
            except (BrokenPipeError, OSError) as exc:
                logger.debug("%s did not accept shutdown message: %s", self._name, exc)
            else:
                process.join(timeout=_TERMINATE_GRACE_SECONDS)
        self.terminate()
