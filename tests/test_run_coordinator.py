from __future__ import annotations

import pytest

from caraml_playground.client.api import ClientError, QueuedRun, RunUpdate
from caraml_playground.client.polling import PollingSync
from caraml_playground.client.runs import Run, RunBook, RunUpdateCoordinator


class FakeClient:
    def __init__(self) -> None:
        self.statuses: dict[str, str] = {}
        self.queued: list[str] = []

    def queue_compilation(self, source_code: str) -> QueuedRun:
        run_id = f"run-{len(self.queued)}"
        self.queued.append(source_code)
        self.statuses[run_id] = "pending"
        return QueuedRun(id=run_id, status="pending")

    def fetch_run_status(self, run_id: str) -> RunUpdate:
        status = self.statuses.get(run_id, "unknown")
        error = "compile failed (exit code 1): boom" if status == "failed" else None
        return RunUpdate(id=run_id, status=status, error_message=error)


def make_coordinator() -> tuple[RunUpdateCoordinator, FakeClient, PollingSync]:
    client = FakeClient()
    source = PollingSync(client.fetch_run_status, interval_seconds=60)
    coordinator = RunUpdateCoordinator(RunBook(), source, client=client)  # type: ignore[arg-type]
    return coordinator, client, source


def test_submit_records_run_and_starts_tracking() -> None:
    coordinator, client, source = make_coordinator()
    try:
        run = coordinator.submit("fun main () = 1;")

        assert client.queued == ["fun main () = 1;"]
        assert coordinator.book.get(run.id) == run
        assert run.source_code == "fun main () = 1;"
        assert source.tracked == [run.id]
        assert source.started
        assert source.is_active
    finally:
        coordinator.close()


def test_updates_are_merged_and_resolved_runs_stop_the_source() -> None:
    coordinator, client, source = make_coordinator()
    try:
        ok = coordinator.submit("fun ok () = 1;")
        bad = coordinator.submit("fun bad () = 2;")

        client.statuses[ok.id] = "running"
        source.poll_once()
        assert coordinator.book.get(ok.id).status == "running"  # type: ignore[union-attr]
        assert source.tracked == [ok.id, bad.id]

        client.statuses[ok.id] = "succeeded"
        client.statuses[bad.id] = "failed"
        source.poll_once()

        assert coordinator.book.get(ok.id).status == "succeeded"  # type: ignore[union-attr]
        failed = coordinator.book.get(bad.id)
        assert failed is not None
        assert failed.status == "failed"
        assert failed.error_message == "compile failed (exit code 1): boom"
        assert failed.source_code == "fun bad () = 2;"
        assert coordinator.book.active_ids() == []
        assert source.tracked == []
        assert not source.started
        assert not source.is_active
    finally:
        coordinator.close()


def test_unknown_runs_leave_the_tracked_set() -> None:
    coordinator, _client, source = make_coordinator()
    try:
        coordinator.follow("forgotten-run")
        assert source.tracked == ["forgotten-run"]

        source.poll_once()

        assert coordinator.book.get("forgotten-run").status == "unknown"  # type: ignore[union-attr]
        assert source.tracked == []
    finally:
        coordinator.close()


def test_submit_without_client_is_an_error() -> None:
    source = PollingSync(lambda run_id: RunUpdate(id=run_id, status="pending"), interval_seconds=60)
    coordinator = RunUpdateCoordinator(RunBook(), source)
    with pytest.raises(ClientError):
        coordinator.submit("fun main () = 1;")


def test_run_book_notifies_only_on_change() -> None:
    book = RunBook()
    seen: list[list[Run]] = []
    unsubscribe = book.subscribe(seen.append)

    book.add(Run(id="a", status="pending"))
    book.apply([RunUpdate(id="a", status="pending")])
    book.apply([RunUpdate(id="a", status="running")])
    book.apply([RunUpdate(id="not-in-book", status="running")])
    unsubscribe()
    book.apply([RunUpdate(id="a", status="succeeded")])

    assert [[run.status for run in batch] for batch in seen] == [["pending"], ["running"]]
    assert book.get("a").status == "succeeded"  # type: ignore[union-attr]
    assert book.remove("a") is not None
    assert book.runs() == []
