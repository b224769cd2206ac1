"""Sequential execution of pending C-MOVE transfers."""

import asyncio
from collections.abc import Callable, Sequence

from pydantic import BaseModel

from rtexport.services.dicom.client import DicomClient
from rtexport.services.dicom.models import DicomNode, RetrieveResult
from rtexport.services.export.models import ImageTarget, PendingTransfer, SeriesTarget
from rtexport.services.export.session import ExportSession
from rtexport.utils.logger import logger

TransferStartCallback = Callable[[int, int, PendingTransfer], None]


class TransferSummary(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    instances_received: int = 0


class TransferExecutor:
    """Runs transfers one at a time against the remote archive.

    Transfers are never run concurrently: the archive gets a single retrieve
    association at a time. Before each C-MOVE the transfer's destination is
    registered in the session's route table under its correlation key, and
    after it the executor waits for the reported number of instances to reach
    the local receiver.
    """

    def __init__(
        self,
        client: DicomClient,
        peer: DicomNode,
        session: ExportSession,
        move_timeout: float = 300.0,
        settle_delay: float = 0.5,
        completion_timeout: float = 10.0,
    ):
        """Initialize the executor.

        Args:
            client: DICOM client issuing the C-MOVEs
            peer: Remote archive
            session: Export session (route table, cancellation, move destination)
            move_timeout: Timeout of one C-MOVE
            settle_delay: Fixed wait when the archive reports no completed count
            completion_timeout: Longest wait for reported instances to arrive
        """
        self.client = client
        self.peer = peer
        self.session = session
        self.move_timeout = move_timeout
        self.settle_delay = settle_delay
        self.completion_timeout = completion_timeout

    async def run(
        self,
        transfers: Sequence[PendingTransfer],
        on_start: TransferStartCallback | None = None,
    ) -> TransferSummary:
        """Execute ``transfers`` in order.

        Raises:
            ExportCancelledError: If the session is cancelled between transfers
        """
        summary = TransferSummary()
        total = len(transfers)
        for index, transfer in enumerate(transfers):
            self.session.cancel_token.raise_if_cancelled()
            if on_start is not None:
                on_start(index, total, transfer)

            summary.attempted += 1
            if await self.execute(transfer):
                summary.succeeded += 1
            else:
                summary.failed += 1
            summary.instances_received += self.session.routes.received_count(
                transfer.correlation_key
            )
        return summary

    async def execute(self, transfer: PendingTransfer) -> bool:
        """Execute one transfer; failures are logged, never raised.

        Returns:
            True if the archive reported success
        """
        key = transfer.correlation_key
        self.session.routes.register(key, transfer.destination)
        logger.info(f"Exporting {transfer.label} ({transfer.target.kind} {key})")

        try:
            result = await self._move(transfer)
        except Exception as e:
            logger.error(f"Error exporting {transfer.label} ({key}): {e}")
            return False

        if not result.succeeded:
            code = f"0x{result.status_code:04x}" if result.status_code is not None else "none"
            logger.warning(
                f"C-MOVE of {key} ended with status {result.status.value} ({code}), "
                f"{result.num_failed} failed sub-operations"
            )

        await self._settle(key, result)
        return result.succeeded

    async def _move(self, transfer: PendingTransfer) -> RetrieveResult:
        destination_aet = self.session.local_aet
        match transfer.target:
            case SeriesTarget(study_instance_uid=study_uid, series_instance_uid=series_uid):
                return await self.client.move_series(
                    study_uid, series_uid, self.peer, destination_aet, timeout=self.move_timeout
                )
            case ImageTarget(
                study_instance_uid=study_uid,
                series_instance_uid=series_uid,
                sop_instance_uid=sop_uid,
            ):
                return await self.client.move_instance(
                    study_uid,
                    series_uid,
                    sop_uid,
                    self.peer,
                    destination_aet,
                    timeout=self.move_timeout,
                )

    async def _settle(self, key: str, result: RetrieveResult) -> None:
        """Wait for the moved instances to be written locally."""
        expected = result.num_completed + result.num_warning
        if expected <= 0:
            await asyncio.sleep(self.settle_delay)
            return

        if not await self.session.routes.wait_for(key, expected, self.completion_timeout):
            logger.warning(
                f"Only {self.session.routes.received_count(key)} of {expected} instances "
                f"for {key} arrived within {self.completion_timeout}s"
            )
