from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Iterable, Sequence

from caraml_playground.core.config import Settings
from caraml_playground.jobs.types import ArtifactPaths, ClaimedJob
from caraml_playground.storage.artifacts import ArtifactStore, LocalArtifactStore

logger = logging.getLogger(__name__)

SOURCE_SUFFIX = ".cml"
IR_SUFFIX = ".ll"
JS_SUFFIX = ".js"
WASM_SUFFIX = ".wasm"

JS_CONTENT_TYPE = "application/javascript"
WASM_CONTENT_TYPE = "application/wasm"
IR_CONTENT_TYPE = "text/plain; charset=utf-8"

RUNTIME_SOURCE_NAME = "runtime.c"
RUNTIME_OBJECT_NAME = "runtime.o"

BACKEND_FLAGS: tuple[str, ...] = (
    "-O3",
    "-s", "WASM=1",
    "-s", "MODULARIZE=1",
    "-s", "EXPORT_NAME=createExec",
    "-s", "INVOKE_RUN=0",
    "-s", "EXIT_RUNTIME=1",
    "-s", "ALLOW_MEMORY_GROWTH=1",
    "-s", 'EXPORTED_RUNTIME_METHODS=["callMain"]',
)


class PipelineError(RuntimeError):
    pass


@dataclass(frozen=True)
class CommandResult:
    returncode: int | None
    stdout: str
    stderr: str
    elapsed_seconds: float
    timed_out: bool

    @property
    def diagnostic(self) -> str:
        return self.stderr.strip() or self.stdout.strip()


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    error: str | None = None
    artifacts: ArtifactPaths | None = None


def truncate_diagnostic(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n[truncated]"


def _pump(stream: IO[str], sink: list[str], log_prefix: str, label: str) -> None:
    for line in stream:
        sink.append(line)
        stripped = line.rstrip()
        if stripped:
            logger.debug("%s %s%s", log_prefix, label, stripped)
    stream.close()


def run_command_streaming(
    command: Sequence[str],
    *,
    timeout_seconds: float,
    log_prefix: str = "",
    cwd: Path | None = None,
) -> CommandResult:
    """Run ``command`` while logging its output line by line as it arrives.

    On expiry of ``timeout_seconds`` the process is killed and the result is
    flagged ``timed_out``; output captured up to that point is kept.
    """
    started = time.monotonic()
    try:
        process = subprocess.Popen(
            list(command),
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
        )
    except OSError as exc:
        raise PipelineError(f"failed to start {command[0]}: {exc}") from exc

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    readers = [
        threading.Thread(target=_pump, args=(process.stdout, stdout_lines, log_prefix, ""), daemon=True),
        threading.Thread(target=_pump, args=(process.stderr, stderr_lines, log_prefix, "[stderr] "), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        process.kill()
        process.wait()
    for reader in readers:
        reader.join(timeout=5)

    stderr = "".join(stderr_lines)
    if timed_out:
        stderr += f"\n[timeout] exceeded {timeout_seconds:g}s"
    return CommandResult(
        returncode=process.returncode,
        stdout="".join(stdout_lines),
        stderr=stderr,
        elapsed_seconds=time.monotonic() - started,
        timed_out=timed_out,
    )


@dataclass(frozen=True)
class CompilationPipeline:
    store: ArtifactStore
    scratch_root: Path
    compiler_bin: str = "caraml"
    backend_bin: str = "emcc"
    compile_timeout_seconds: float = 60.0
    backend_timeout_seconds: float = 30.0
    diagnostic_max_chars: int = 4000
    runtime_object: Path | None = None
    publish_ir: bool = False
    backend_flags: tuple[str, ...] = field(default=BACKEND_FLAGS)

    @classmethod
    def from_settings(cls, settings: Settings, store: ArtifactStore | None = None) -> "CompilationPipeline":
        runtime_object = settings.runtime_root / RUNTIME_OBJECT_NAME if settings.prepare_runtime_on_start else None
        return cls(
            store=store or LocalArtifactStore(settings.artifacts_root),
            scratch_root=settings.scratch_root,
            compiler_bin=settings.compiler_bin,
            backend_bin=settings.backend_bin,
            compile_timeout_seconds=settings.compile_timeout_seconds,
            backend_timeout_seconds=settings.backend_timeout_seconds,
            diagnostic_max_chars=settings.diagnostic_max_chars,
            runtime_object=runtime_object,
            publish_ir=settings.publish_ir,
        )

    @property
    def _backend_name(self) -> str:
        return Path(self.backend_bin).name

    def _diagnostic(self, result: CommandResult) -> str:
        return truncate_diagnostic(result.diagnostic, self.diagnostic_max_chars)

    def prepare_runtime(self) -> Path:
        if self.runtime_object is None:
            raise PipelineError("runtime object path is not configured")

        runtime_dir = self.runtime_object.parent
        runtime_dir.mkdir(parents=True, exist_ok=True)
        runtime_source = runtime_dir / RUNTIME_SOURCE_NAME

        logger.info("Emitting compiler runtime to %s", runtime_source)
        emitted = run_command_streaming(
            [self.compiler_bin, "--emit-runtime", str(runtime_source)],
            timeout_seconds=self.compile_timeout_seconds,
            log_prefix="[runtime]",
            cwd=runtime_dir,
        )
        if emitted.returncode != 0 or not runtime_source.is_file():
            raise PipelineError(f"runtime emission failed: {self._diagnostic(emitted)}")

        logger.info("Compiling runtime with %s", self._backend_name)
        compiled = run_command_streaming(
            [self.backend_bin, "-O2", str(runtime_source), "-c", "-o", str(self.runtime_object)],
            timeout_seconds=self.backend_timeout_seconds,
            log_prefix="[runtime]",
            cwd=runtime_dir,
        )
        if compiled.returncode != 0 or not self.runtime_object.is_file():
            raise PipelineError(f"runtime compilation failed: {self._diagnostic(compiled)}")

        logger.info("Runtime ready at %s", self.runtime_object)
        return self.runtime_object

    def scratch_paths(self, job_id: str) -> dict[str, Path]:
        return {
            "source": self.scratch_root / f"{job_id}{SOURCE_SUFFIX}",
            "ir": self.scratch_root / f"{job_id}{IR_SUFFIX}",
            "js": self.scratch_root / f"{job_id}{JS_SUFFIX}",
            "wasm": self.scratch_root / f"{job_id}{WASM_SUFFIX}",
        }

    def run(self, job: ClaimedJob) -> ExecutionResult:
        log_prefix = f"[unit {job.id}]"
        paths = self.scratch_paths(job.id)
        try:
            artifacts = self._execute(job, paths, log_prefix)
        except PipelineError as exc:
            logger.warning("%s failed: %s", log_prefix, exc)
            return ExecutionResult(success=False, error=str(exc))
        finally:
            self._cleanup(paths.values(), log_prefix)

        logger.info("%s artifacts uploaded", log_prefix)
        return ExecutionResult(success=True, artifacts=artifacts)

    def _execute(self, job: ClaimedJob, paths: dict[str, Path], log_prefix: str) -> ArtifactPaths:
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        logger.debug("%s writing source file", log_prefix)
        try:
            paths["source"].write_text(job.source_code, encoding="utf-8")
        except OSError as exc:
            raise PipelineError(f"could not write source file: {exc}") from exc

        logger.debug("%s compiling to LLVM IR", log_prefix)
        compiled = run_command_streaming(
            [self.compiler_bin, "--llvm", str(paths["source"])],
            timeout_seconds=self.compile_timeout_seconds,
            log_prefix=f"{log_prefix} {Path(self.compiler_bin).name}",
            cwd=self.scratch_root,
        )
        if compiled.timed_out:
            raise PipelineError(
                f"compiler timed out after {self.compile_timeout_seconds:g}s: {self._diagnostic(compiled)}"
            )
        if compiled.returncode != 0:
            raise PipelineError(f"compile failed (exit code {compiled.returncode}): {self._diagnostic(compiled)}")
        if not paths["ir"].is_file():
            raise PipelineError(f"compiler output missing: {paths['ir'].name}")
        logger.debug("%s IR ready (%d bytes)", log_prefix, paths["ir"].stat().st_size)

        command = [str(paths["ir"]), *self.backend_flags]
        if self.runtime_object is not None:
            command.append(str(self.runtime_object))
        command.extend(["-o", str(paths["js"])])
        built = run_command_streaming(
            [self.backend_bin, *command],
            timeout_seconds=self.backend_timeout_seconds,
            log_prefix=f"{log_prefix} {self._backend_name}",
            cwd=self.scratch_root,
        )
        if built.timed_out:
            raise PipelineError(
                f"{self._backend_name} timed out after {self.backend_timeout_seconds:g}s: {self._diagnostic(built)}"
            )
        if built.returncode != 0:
            raise PipelineError(
                f"{self._backend_name} failed (exit code {built.returncode}): {self._diagnostic(built)}"
            )
        logger.debug("%s %s finished in %.2fs", log_prefix, self._backend_name, built.elapsed_seconds)
        for kind in ("js", "wasm"):
            if not paths[kind].is_file():
                raise PipelineError(f"{self._backend_name} output missing: {paths[kind].name}")

        return self._upload(paths)

    def _upload(self, paths: dict[str, Path]) -> ArtifactPaths:
        try:
            wasm = self.store.put(paths["wasm"].name, paths["wasm"].read_bytes(), WASM_CONTENT_TYPE)
            js = self.store.put(paths["js"].name, paths["js"].read_bytes(), JS_CONTENT_TYPE)
            ir = None
            if self.publish_ir:
                ir = self.store.put(paths["ir"].name, paths["ir"].read_bytes(), IR_CONTENT_TYPE)
        except OSError as exc:
            raise PipelineError(f"artifact upload failed: {exc}") from exc
        return ArtifactPaths(js=js, wasm=wasm, ir=ir)

    def discard_scratch(self, job_id: str) -> None:
        """Remove scratch files left by a unit that died mid-job."""
        self._cleanup(self.scratch_paths(job_id).values(), f"[pool {job_id}]")

    def _cleanup(self, paths: Iterable[Path], log_prefix: str) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.debug("%s could not remove %s: %s", log_prefix, path, exc)
