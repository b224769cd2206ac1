"""Per-run export session shared by the transfer executor and the local receiver.

The executor registers a route for every transfer before requesting it; the
receiver, running on pynetdicom's server threads, resolves each incoming
instance to the route registered under its SOPInstanceUID or
SeriesInstanceUID. Routes outlive their transfer for the rest of the export
run, so a late C-STORE still lands in the right directory after the run has
moved on to another patient. Instances matching no route are kept apart in an
``Unrouted`` folder under the export root.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from rtexport.exceptions import ExportCancelledError
from rtexport.utils.logger import logger

if TYPE_CHECKING:
    from rtexport.services.anonymization.anonymizer import Anonymizer
    from rtexport.settings import Settings

UNROUTED_FOLDER = "Unrouted"


class CancellationToken:
    """Cooperative cancellation flag, safe to set from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise ExportCancelledError once cancel() has been called."""
        if self._event.is_set():
            raise ExportCancelledError()


@dataclass
class Route:
    """Destination of one transfer and how many instances reached it."""

    key: str
    destination: Path
    received: int = 0
    written: int = 0
    failed: int = 0


@dataclass
class ReceiverStats:
    received: int = 0
    written: int = 0
    failed: int = 0
    unrouted: int = 0


class RouteTable:
    """Thread-safe map from correlation key to transfer destination."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._routes: dict[str, Route] = {}
        self.stats = ReceiverStats()

    def register(self, key: str, destination: Path) -> Route:
        """Register the route for ``key``.

        Registering a key again re-points it and restarts its counters; each
        transfer waits for its own instances.
        """
        with self._lock:
            route = self._routes.get(key)
            if route is None:
                route = Route(key=key, destination=destination)
                self._routes[key] = route
            else:
                route.destination = destination
                route.received = route.written = route.failed = 0
            return route

    def get(self, key: str) -> Route | None:
        with self._lock:
            return self._routes.get(key)

    def resolve(
        self, sop_instance_uid: str | None, series_instance_uid: str | None
    ) -> Route | None:
        """Find the route for an incoming instance, image-level keys first."""
        with self._lock:
            if sop_instance_uid and sop_instance_uid in self._routes:
                return self._routes[sop_instance_uid]
            if series_instance_uid and series_instance_uid in self._routes:
                return self._routes[series_instance_uid]
            return None

    def record(self, route: Route | None, written: bool) -> None:
        """Count one received instance against ``route`` and the session."""
        with self._lock:
            self.stats.received += 1
            if written:
                self.stats.written += 1
            else:
                self.stats.failed += 1
            if route is None:
                self.stats.unrouted += 1
                return
            route.received += 1
            if written:
                route.written += 1
            else:
                route.failed += 1

    def received_count(self, key: str) -> int:
        with self._lock:
            route = self._routes.get(key)
            return route.received if route else 0

    def clear(self) -> None:
        """Drop every route; called once the run is over."""
        with self._lock:
            self._routes.clear()

    async def wait_for(
        self, key: str, expected: int, timeout: float, poll_interval: float = 0.05
    ) -> bool:
        """Wait until ``expected`` instances reached the route for ``key``.

        Returns:
            True if the count was reached, False on timeout
        """
        deadline = time.monotonic() + timeout
        while self.received_count(key) < expected:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True


@dataclass
class ExportSession:
    """Everything one export run shares between the driver and the receiver."""

    export_root: Path
    local_aet: str
    anonymizer: "Anonymizer | None" = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    routes: RouteTable = field(default_factory=RouteTable)

    @property
    def unrouted_dir(self) -> Path:
        """Where instances matching no registered transfer are written."""
        return self.export_root / UNROUTED_FOLDER

    @property
    def anonymize(self) -> bool:
        return self.anonymizer is not None

    def patient_folder(self, mrn: str) -> str:
        """Folder name for a patient: the MRN, or its token when anonymizing."""
        if self.anonymizer is None:
            return mrn
        return self.anonymizer.patient_folder(mrn)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        anonymizer: "Anonymizer | None" = None,
        cancel_token: CancellationToken | None = None,
    ) -> "ExportSession":
        """Build a session from settings.

        When ``settings.anonymize`` is set and no anonymizer is given, a
        HashAnonymizer over the configured key file is created.
        """
        if anonymizer is None and settings.anonymize:
            from rtexport.services.anonymization import AnonymizationKeyStore, HashAnonymizer

            key_store = AnonymizationKeyStore(
                settings.get_key_path(), salt=settings.anonymization_salt
            )
            anonymizer = HashAnonymizer(key_store)
            logger.info(f"Anonymization enabled, key file: {key_store.path}")

        return cls(
            export_root=Path(settings.export_root),
            local_aet=settings.local_aet,
            anonymizer=anonymizer,
            cancel_token=cancel_token or CancellationToken(),
        )
