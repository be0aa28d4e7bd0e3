from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

import pytest

import caraml_playground.db.session as db_session_module
from caraml_playground.core.config import Settings, get_settings
from caraml_playground.db.init_db import initialize_database

FAKE_COMPILER = """#!/bin/sh
if [ "$1" = "--emit-runtime" ]; then
  echo "int caraml_runtime_ready(void) { return 1; }" > "$2"
  exit 0
fi
if [ "$1" != "--llvm" ]; then
  echo "usage: caraml --llvm <file>" >&2
  exit 64
fi
src="$2"
if grep -q "fun " "$src"; then
  echo "; ModuleID = '$src'" > "${src%.cml}.ll"
  echo "compiled $src"
  exit 0
fi
echo "$src:1:1: error: expected a declaration" >&2
exit 1
"""

FAKE_BACKEND = """#!/bin/sh
out=""
prev=""
for arg in "$@"; do
  if [ "$prev" = "-o" ]; then
    out="$arg"
  fi
  prev="$arg"
done
if [ -z "$out" ]; then
  echo "emcc: no output file" >&2
  exit 1
fi
echo "emcc: linking $out"
case "$out" in
  *.js)
    echo "var createExec = function() {};" > "$out"
    printf 'wasm-bytes' > "${out%.js}.wasm"
    ;;
  *)
    echo "object" > "$out"
    ;;
esac
"""

VALID_SOURCE = "fun fact (n: int) = if n=0 then 1 else n*fact(n-1); fact(7);"
INVALID_SOURCE = "fact fact fact ((("


@dataclass
class FakeToolchain:
    bin_dir: Path
    compiler: Path
    backend: Path

    def write(self, name: str, body: str) -> Path:
        path = self.bin_dir / name
        path.write_text(body, encoding="utf-8")
        path.chmod(0o755)
        return path


@pytest.fixture
def toolchain(tmp_path: Path) -> FakeToolchain:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    chain = FakeToolchain(bin_dir=bin_dir, compiler=bin_dir / "caraml", backend=bin_dir / "emcc")
    chain.write("caraml", FAKE_COMPILER)
    chain.write("emcc", FAKE_BACKEND)
    return chain


def _reset_database_globals() -> None:
    if db_session_module._engine is not None:
        db_session_module._engine.dispose()
    db_session_module._engine = None
    db_session_module._session_factory = None


@pytest.fixture
def configure_env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    toolchain: FakeToolchain,
) -> Iterator[Callable[..., Settings]]:
    def configure(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "state_root": (tmp_path / "state").as_posix(),
            "compiler_bin": toolchain.compiler.as_posix(),
            "backend_bin": toolchain.backend.as_posix(),
            "worker_pool_enabled": False,
            "worker_pool_size": 2,
            "worker_poll_interval_seconds": 0.05,
            "job_timeout_seconds": 20,
            "compile_timeout_seconds": 10,
            "backend_timeout_seconds": 10,
            "prepare_runtime_on_start": False,
            "log_level": "DEBUG",
        }
        values.update(overrides)
        for key, value in values.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            monkeypatch.setenv(f"CARAML_{key.upper()}", str(value))

        get_settings.cache_clear()
        _reset_database_globals()
        initialize_database()
        return get_settings()

    yield configure

    get_settings.cache_clear()
    _reset_database_globals()


def wait_for(predicate: Callable[[], bool], timeout: float = 20.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
