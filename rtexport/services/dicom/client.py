"""Async DICOM client for query-retrieve operations."""

import asyncio
from collections.abc import Callable
from typing import TypeVar

from rtexport.services.dicom.models import (
    AssociationConfig,
    DicomNode,
    ImageQuery,
    InstanceRecord,
    QueryRetrieveLevel,
    RetrieveRequest,
    RetrieveResult,
    SeriesQuery,
    SeriesRecord,
    StudyQuery,
    StudyRecord,
)
from rtexport.services.dicom.operations import DicomOperations
from rtexport.utils.logger import logger

T = TypeVar("T")


class DicomClient:
    """Async facade over DicomOperations.

    pynetdicom is blocking, so every operation runs in a worker thread via
    asyncio.to_thread(). Each call opens and releases its own association.
    All methods raise AssociationError when the peer cannot be reached;
    queries raise QueryError and moves TransferError when the peer refuses them.
    """

    def __init__(self, calling_aet: str, max_pdu: int = 16384):
        """Initialize DICOM client.

        Args:
            calling_aet: Calling AE title (also the C-MOVE destination we announce)
            max_pdu: Maximum PDU size (0 for unlimited)
        """
        self.calling_aet = calling_aet
        self.max_pdu = max_pdu
        self._operations = DicomOperations(calling_aet=calling_aet, max_pdu=max_pdu)

    def _config(self, peer: DicomNode, timeout: float) -> AssociationConfig:
        return AssociationConfig(
            calling_aet=self.calling_aet,
            called_aet=peer.aet,
            peer_host=peer.host,
            peer_port=peer.port,
            max_pdu=self.max_pdu,
            timeout=timeout,
        )

    async def _run(
        self,
        operation: Callable[..., T],
        peer: DicomNode,
        timeout: float,
        *args: object,
    ) -> T:
        return await asyncio.to_thread(operation, self._config(peer, timeout), *args)

    async def find_studies(
        self, query: StudyQuery, peer: DicomNode, timeout: float = 30.0
    ) -> list[StudyRecord]:
        """Study-level C-FIND, normally by PatientID."""
        logger.info(f"Searching studies of patient {query.patient_id} on {peer}")
        studies = await self._run(self._operations.find_studies, peer, timeout, query)
        logger.info(f"Found {len(studies)} studies")
        return studies

    async def find_series(
        self, query: SeriesQuery, peer: DicomNode, timeout: float = 30.0
    ) -> list[SeriesRecord]:
        logger.debug(f"Searching series of study {query.study_instance_uid} on {peer}")
        found = await self._run(self._operations.find_series, peer, timeout, query)
        logger.debug(f"Found {len(found)} series")
        return found

    async def find_images(
        self, query: ImageQuery, peer: DicomNode, timeout: float = 30.0
    ) -> list[InstanceRecord]:
        logger.debug(f"Searching instances of series {query.series_instance_uid} on {peer}")
        found = await self._run(self._operations.find_images, peer, timeout, query)
        logger.debug(f"Found {len(found)} instances")
        return found

    async def move_series(
        self,
        study_uid: str,
        series_uid: str,
        peer: DicomNode,
        destination_aet: str,
        timeout: float = 300.0,
    ) -> RetrieveResult:
        """Ask ``peer`` to send a whole series to ``destination_aet``.

        Returns:
            Move result with sub-operation counters
        """
        logger.info(f"Moving series {series_uid} to {destination_aet}")
        request = RetrieveRequest(
            level=QueryRetrieveLevel.SERIES,
            study_instance_uid=study_uid,
            series_instance_uid=series_uid,
        )
        return await self._run(self._operations.move, peer, timeout, request, destination_aet)

    async def move_instance(
        self,
        study_uid: str,
        series_uid: str,
        sop_uid: str,
        peer: DicomNode,
        destination_aet: str,
        timeout: float = 300.0,
    ) -> RetrieveResult:
        """Ask ``peer`` to send a single instance to ``destination_aet``."""
        logger.info(f"Moving instance {sop_uid} to {destination_aet}")
        request = RetrieveRequest(
            level=QueryRetrieveLevel.IMAGE,
            study_instance_uid=study_uid,
            series_instance_uid=series_uid,
            sop_instance_uid=sop_uid,
        )
        return await self._run(self._operations.move, peer, timeout, request, destination_aet)
