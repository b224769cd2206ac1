"""Local storage SCP receiving the instances moved by the remote archive."""

from typing import Any

from pynetdicom import (  # type: ignore[import-not-found]
    AE,
    ALL_TRANSFER_SYNTAXES,
    AllStoragePresentationContexts,
)
from pynetdicom.sop_class import Verification  # type: ignore[import-not-found,attr-defined]

from rtexport.exceptions import ReceiverError
from rtexport.services.dicom.handlers import StoreHandler, create_store_handlers
from rtexport.services.export.session import ExportSession
from rtexport.utils.logger import logger


class LocalReceiver:
    """Storage SCP bound to a local port for the duration of one export run.

    pynetdicom serves every incoming association on its own thread, so
    instances may arrive at any time while the export driver is between
    operations. Use as a context manager, or call start() and stop().
    """

    def __init__(
        self,
        session: ExportSession,
        ae_title: str,
        port: int,
        host: str = "0.0.0.0",
        max_pdu: int = 16384,
    ):
        """Initialize the receiver.

        Args:
            session: Export session the handler writes into
            ae_title: Local AE title (the C-MOVE destination)
            port: Local port to listen on
            host: Local address to bind
            max_pdu: Maximum PDU size (0 for unlimited)
        """
        self.session = session
        self.ae_title = ae_title
        self.host = host
        self.port = port
        self.max_pdu = max_pdu
        self._server: Any = None
        self._handler: StoreHandler | None = None

    def _create_ae(self) -> AE:
        ae = AE(ae_title=self.ae_title)
        ae.maximum_pdu_size = self.max_pdu
        for cx in AllStoragePresentationContexts:
            ae.add_supported_context(cx.abstract_syntax, ALL_TRANSFER_SYNTAXES)
        ae.add_supported_context(Verification)
        return ae

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def start(self) -> None:
        """Start listening without blocking.

        Raises:
            ReceiverError: If already running or the port cannot be bound
        """
        if self._server is not None:
            raise ReceiverError(f"Storage SCP is already running on {self.host}:{self.port}")

        handlers, self._handler = create_store_handlers(self.session)
        ae = self._create_ae()
        try:
            self._server = ae.start_server(
                (self.host, self.port),
                block=False,
                evt_handlers=handlers,  # type: ignore[arg-type]
            )
        except OSError as e:
            logger.error(f"Failed to start storage SCP on {self.host}:{self.port}: {e}")
            raise ReceiverError(
                f"Failed to start storage SCP on {self.host}:{self.port}: {e}"
            ) from e

        logger.info(f"Storage SCP {self.ae_title} listening on {self.host}:{self.port}")

    def stop(self) -> None:
        """Stop listening and close the socket."""
        if self._server is None:
            return
        logger.info(f"Stopping storage SCP {self.ae_title}")
        self._server.shutdown()
        self._server = None
        stats = self.session.routes.stats
        logger.info(
            f"Storage SCP received {stats.received} instances: "
            f"{stats.written} written, {stats.failed} failed, {stats.unrouted} unrouted"
        )

    def __enter__(self) -> "LocalReceiver":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
