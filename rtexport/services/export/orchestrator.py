"""Top-level driver of a multi-examination export run."""

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from rtexport.exceptions import ConfigError, ExportCancelledError
from rtexport.services.dicom.client import DicomClient
from rtexport.services.dicom.models import DicomNode
from rtexport.services.dicom.receiver import LocalReceiver
from rtexport.services.export.executor import TransferExecutor
from rtexport.services.export.models import (
    ExportOptions,
    ExportOutcome,
    ExportProgress,
    ExportReport,
    ExportRequest,
    PendingTransfer,
)
from rtexport.services.export.planner import ExportPlanner
from rtexport.services.export.query import QueryCoordinator
from rtexport.services.export.resolver import CrossReferenceResolver
from rtexport.services.export.session import ExportSession
from rtexport.settings import Settings
from rtexport.utils.logger import logger
from rtexport.utils.naming import examination_root

ProgressCallback = Callable[[ExportProgress], None]


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(done / total * 100)


class ExportOrchestrator:
    """Sequences query, cross-referencing, planning and transfer per examination.

    The local receiver runs for the whole run; each examination is queried,
    resolved, planned and transferred in turn. A patient the archive knows
    nothing about is skipped, a failed transfer is logged and skipped, and
    only cancellation or an unexpected error ends the run early.
    """

    def __init__(
        self,
        session: ExportSession,
        options: ExportOptions,
        peer: DicomNode,
        client: DicomClient | None = None,
        receiver: Any = None,
        progress: ProgressCallback | None = None,
        local_host: str = "0.0.0.0",
        local_port: int = 11112,
        max_pdu: int = 16384,
        query_timeout: float = 30.0,
        move_timeout: float = 300.0,
        settle_delay: float = 0.5,
        completion_timeout: float = 10.0,
        final_settle_delay: float = 2.0,
    ):
        self.session = session
        self.options = options
        self.peer = peer
        self.progress = progress
        self.final_settle_delay = final_settle_delay

        self.client = client or DicomClient(calling_aet=session.local_aet, max_pdu=max_pdu)
        self.receiver = receiver or LocalReceiver(
            session, ae_title=session.local_aet, port=local_port, host=local_host, max_pdu=max_pdu
        )
        self.query = QueryCoordinator(self.client, peer, timeout=query_timeout)
        self.resolver = CrossReferenceResolver(self.query, options)
        self.executor = TransferExecutor(
            self.client,
            peer,
            session,
            move_timeout=move_timeout,
            settle_delay=settle_delay,
            completion_timeout=completion_timeout,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session: ExportSession | None = None,
        options: ExportOptions | None = None,
        progress: ProgressCallback | None = None,
        **kwargs: Any,
    ) -> "ExportOrchestrator":
        """Build an orchestrator wired to the configured archive and local SCP."""
        return cls(
            session=session or ExportSession.from_settings(settings),
            options=options or settings.to_export_options(),
            peer=settings.remote_node,
            progress=progress,
            local_host=settings.local_host,
            local_port=settings.local_port,
            max_pdu=settings.max_pdu,
            query_timeout=settings.query_timeout,
            move_timeout=settings.move_timeout,
            settle_delay=settings.settle_delay,
            completion_timeout=settings.completion_timeout,
            final_settle_delay=settings.final_settle_delay,
            **kwargs,
        )

    def _report(self, overall: int, item: int, status: str, detail: str = "") -> None:
        if self.progress is None:
            return
        try:
            self.progress(
                ExportProgress(
                    overall_percent=overall, item_percent=item, status=status, detail=detail
                )
            )
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def run(self, requests: Sequence[ExportRequest]) -> ExportReport:
        """Export every request.

        Returns:
            Report whose outcome tells completed, cancelled and failed runs apart

        Raises:
            ConfigError: If no data type is selected
        """
        if not self.options.any_selected():
            raise ConfigError("Select at least one data type to export")

        report = ExportReport(items_total=len(requests))
        total = len(requests)
        receiver_started = False

        try:
            self.receiver.start()
            receiver_started = True
            self._report(0, 0, "Connected to DICOM server", f"Remote: {self.peer}")

            for index, request in enumerate(requests):
                self.session.cancel_token.raise_if_cancelled()
                await self.export_item(request, index, total, report)

            if self.final_settle_delay > 0:
                await asyncio.sleep(self.final_settle_delay)

            self._report(
                100, 100, "Export complete", f"Exported {report.items_exported} examination(s)"
            )
            logger.info(
                f"Export complete: {report.items_exported} exported, "
                f"{report.items_skipped} skipped, {report.transfers_failed} failed transfers"
            )

        except ExportCancelledError:
            report.outcome = ExportOutcome.CANCELLED
            logger.info("Export cancelled")
            self._report(
                _percent(report.items_exported + report.items_skipped, total),
                0,
                "Export cancelled",
                f"Exported {report.items_exported} examination(s) before cancellation",
            )

        except Exception as e:
            report.outcome = ExportOutcome.FAILED
            report.error = str(e)
            logger.exception(f"Export failed: {e}")
            self._report(
                _percent(report.items_exported + report.items_skipped, total),
                0,
                "Export failed",
                str(e),
            )

        finally:
            if receiver_started:
                self.receiver.stop()
            self.session.routes.clear()

        return report

    async def export_item(
        self, request: ExportRequest, index: int, total: int, report: ExportReport
    ) -> bool:
        """Export one examination.

        Returns:
            True if the examination was exported, False if it was skipped
        """
        overall = _percent(index, total)
        patient_folder = self.session.patient_folder(request.mrn)
        self._report(
            overall,
            0,
            f"Processing: {patient_folder}",
            f"Exam: {request.exam_name} ({index + 1}/{total})",
        )

        exam_root = examination_root(
            self.session.export_root, patient_folder, request.course_name, request.exam_name
        )
        exam_root.mkdir(parents=True, exist_ok=True)

        studies = await self.query.find_studies(request.mrn)
        if not studies:
            logger.warning(f"No studies found for patient {patient_folder}, skipping")
            self._report(
                overall, 0, f"Warning: No studies found for {patient_folder}", "Skipping..."
            )
            report.items_skipped += 1
            return False

        series = await self.query.find_series(studies)
        resolved = await self.resolver.resolve(request, series)
        pending = ExportPlanner(exam_root, patient_folder).collect(resolved)
        if not pending:
            logger.warning(f"Nothing to export for {patient_folder}/{request.exam_name}")

        def on_start(position: int, count: int, transfer: PendingTransfer) -> None:
            self._report(
                overall,
                _percent(position, count),
                f"Exporting {transfer.data_type.value}",
                f"{transfer.label} ({position + 1}/{count})",
            )

        summary = await self.executor.run(pending, on_start=on_start)
        report.transfers_attempted += summary.attempted
        report.transfers_failed += summary.failed
        report.items_exported += 1

        self._report(
            _percent(index + 1, total),
            100,
            f"Completed: {patient_folder}",
            f"{summary.succeeded}/{summary.attempted} transfer(s), "
            f"{summary.instances_received} instance(s) received",
        )
        return True
