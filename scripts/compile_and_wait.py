from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path

from caraml_playground.client import PlaygroundClient, PollingSync, Run, RunBook, RunUpdateCoordinator
from caraml_playground.core.logging import configure_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Queue CaraML sources for compilation and wait for the results")
    parser.add_argument("sources", nargs="+", help="CaraML source files")
    parser.add_argument("--server-url", default=None, help="Compile service URL (default: $CARAML_SERVER_URL)")
    parser.add_argument("--interval", type=float, default=1.5, help="Status polling interval in seconds")
    parser.add_argument("--timeout", type=float, default=120.0, help="Give up waiting after this many seconds")
    parser.add_argument("--output-dir", default=None, help="Download js/wasm artifacts of succeeded runs here")
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args()


def download_artifacts(client: PlaygroundClient, run: Run, output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    for kind in ("js", "wasm"):
        data = client.fetch_artifact(run.id, kind)
        if data is None:
            print(f"  {kind}: not available")
            continue
        target = output_dir / f"{run.id}.{kind}"
        target.write_bytes(data)
        print(f"  {kind}: {target} ({len(data)} bytes)")


def main() -> int:
    args = parse_args()
    configure_logging(args.log_level)

    client = PlaygroundClient(args.server_url)
    book = RunBook()
    coordinator = RunUpdateCoordinator(
        book,
        PollingSync(client.fetch_run_status, interval_seconds=args.interval),
        client=client,
    )

    settled = threading.Event()

    def on_change(_changed: list[Run]) -> None:
        if not book.active_ids():
            settled.set()

    unsubscribe = book.subscribe(on_change)
    names: dict[str, str] = {}
    try:
        for source in args.sources:
            run = coordinator.submit(Path(source).read_text(encoding="utf-8"))
            names[run.id] = source
            print(f"queued {source} as {run.id}")

        if not settled.wait(args.timeout):
            print(f"timed out after {args.timeout:g}s waiting for {len(book.active_ids())} run(s)", file=sys.stderr)
            return 2
    finally:
        unsubscribe()
        coordinator.close()

    exit_code = 0
    for run in book.runs():
        print(f"{names.get(run.id, run.id)}: {run.status}")
        if run.status == "failed":
            exit_code = 1
            print(run.error_message or "(no diagnostic)")
        elif args.output_dir:
            download_artifacts(client, run, Path(args.output_dir))
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
