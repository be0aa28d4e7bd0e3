from caraml_playground.client.api import ClientError, PlaygroundClient, QueuedRun, RunUpdate
from caraml_playground.client.polling import PollingSync
from caraml_playground.client.runs import Run, RunBook, RunUpdateCoordinator

__all__ = [
    "ClientError",
    "PlaygroundClient",
    "QueuedRun",
    "RunUpdate",
    "PollingSync",
    "Run",
    "RunBook",
    "RunUpdateCoordinator",
]
