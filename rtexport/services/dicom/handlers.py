"""Event handlers for the local storage SCP."""

import uuid
from pathlib import Path
from typing import Any

from pydicom import Dataset
from pynetdicom import evt

from rtexport.exceptions import StorageError
from rtexport.services.export.session import ExportSession
from rtexport.utils.logger import logger

STATUS_SUCCESS = 0x0000
STATUS_OUT_OF_RESOURCES = 0xA700
STATUS_CANNOT_UNDERSTAND = 0xC210
STATUS_FAILURE = 0xC000

MODALITY_SUBFOLDERS: dict[str, str] = {
    "RTSTRUCT": "Structure",
    "RTPLAN": "Plan",
    "RTDOSE": "Dose",
    "REG": "Registrations",
    "SPATIAL REGISTRATION": "Registrations",
}


def subfolder_for_modality(modality: str | None) -> str:
    """Subfolder an instance of ``modality`` is written to, "" for the root."""
    if not modality:
        return ""
    return MODALITY_SUBFOLDERS.get(modality.strip().upper(), "")


class StoreHandler:
    """Handler for C-STORE events writing instances into the export tree."""

    def __init__(self, session: ExportSession):
        """Initialize store handler.

        Args:
            session: Export session providing routes and anonymization
        """
        self.session = session

    def handle_echo(self, event: evt.Event) -> int:
        """Handle C-ECHO request."""
        logger.debug(f"C-ECHO from {event.assoc.requestor.ae_title}")
        return STATUS_SUCCESS

    def handle_store(self, event: evt.Event) -> int:
        """Handle C-STORE request.

        Args:
            event: pynetdicom event object

        Returns:
            Status code (0x0000 for success)
        """
        try:
            ds = event.dataset
            ds.file_meta = event.file_meta
        except Exception as e:
            logger.error(f"Unable to decode incoming dataset: {e}")
            self.session.routes.record(None, written=False)
            return STATUS_CANNOT_UNDERSTAND

        return self.store(ds)

    def store(self, ds: Dataset) -> int:
        """Route, optionally anonymize and write one received instance.

        Returns:
            Status code
        """
        sop_uid = _attr(ds, "SOPInstanceUID")
        series_uid = _attr(ds, "SeriesInstanceUID")
        routes = self.session.routes

        route = routes.resolve(sop_uid, series_uid)
        if route is not None:
            base_dir = route.destination
        else:
            base_dir = self.session.unrouted_dir
            logger.warning(
                f"No route for instance {sop_uid} (series {series_uid}), using {base_dir}"
            )

        subfolder = subfolder_for_modality(_attr(ds, "Modality"))
        target_dir = base_dir / subfolder if subfolder else base_dir

        if not sop_uid:
            sop_uid = str(uuid.uuid4())
            logger.warning(f"Received instance without SOPInstanceUID, saving as {sop_uid}.dcm")

        try:
            if self.session.anonymizer is not None:
                self.session.anonymizer.anonymize_dataset(ds)
            filepath = self._write(ds, target_dir, sop_uid)
        except StorageError as e:
            logger.error(str(e))
            routes.record(route, written=False)
            return STATUS_OUT_OF_RESOURCES
        except Exception as e:
            logger.error(f"Error handling C-STORE for {sop_uid}: {e}")
            routes.record(route, written=False)
            return STATUS_FAILURE

        routes.record(route, written=True)
        logger.debug(f"Stored instance to {filepath}")
        return STATUS_SUCCESS

    def _write(self, ds: Dataset, target_dir: Path, sop_uid: str) -> Path:
        """Write ``ds`` as ``<sop_uid>.dcm`` under ``target_dir``.

        Raises:
            StorageError: If the directory or file cannot be written
        """
        filepath = target_dir / f"{sop_uid}.dcm"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            ds.save_as(filepath, enforce_file_format=True)
        except OSError as e:
            raise StorageError(f"Error storing {sop_uid} to {filepath}: {e}") from e
        return filepath


def _attr(ds: Dataset, keyword: str) -> str | None:
    val: Any = getattr(ds, keyword, None)
    if val is None or val == "":
        return None
    return str(val)


def create_store_handlers(session: ExportSession) -> tuple[list[tuple[Any, Any]], StoreHandler]:
    """Create C-STORE and C-ECHO event handlers bound to ``session``.

    Returns:
        Tuple of (event handlers list, store handler instance)
    """
    handler = StoreHandler(session)
    handlers = [
        (evt.EVT_C_ECHO, handler.handle_echo),
        (evt.EVT_C_STORE, handler.handle_store),
    ]
    return handlers, handler
