"""Synchronous C-FIND and C-MOVE against the remote archive using pynetdicom."""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from pydicom import Dataset
from pynetdicom import AE  # type: ignore[import-not-found]
from pynetdicom.association import Association  # type: ignore[import-not-found]
from pynetdicom.sop_class import (  # type: ignore[import-not-found,attr-defined]
    StudyRootQueryRetrieveInformationModelFind,
    StudyRootQueryRetrieveInformationModelMove,
)

from rtexport.exceptions import AssociationError, QueryError, TransferError
from rtexport.services.dicom.models import (
    AssociationConfig,
    ImageQuery,
    InstanceRecord,
    QueryRetrieveLevel,
    RetrieveRequest,
    RetrieveResult,
    RetrieveStatus,
    SeriesQuery,
    SeriesRecord,
    StudyQuery,
    StudyRecord,
)
from rtexport.utils.logger import logger

STATUS_SUCCESS = 0x0000
STATUS_PENDING = (0xFF00, 0xFF01)
STATUS_MOVE_WARNING = 0xB000

R = TypeVar("R")

# Attributes requested back (universal matching) at each query level
RETURN_KEYS: dict[QueryRetrieveLevel, tuple[str, ...]] = {
    QueryRetrieveLevel.STUDY: ("StudyDate", "StudyDescription", "ModalitiesInStudy"),
    QueryRetrieveLevel.SERIES: (
        "SeriesDescription",
        "SeriesNumber",
        "NumberOfSeriesRelatedInstances",
    ),
    QueryRetrieveLevel.IMAGE: ("SOPClassUID", "Modality"),
}

# Sub-operation counters of a C-MOVE response and the result fields they fill
MOVE_COUNTERS = {
    "NumberOfRemainingSuboperations": "num_remaining",
    "NumberOfCompletedSuboperations": "num_completed",
    "NumberOfFailedSuboperations": "num_failed",
    "NumberOfWarningSuboperations": "num_warning",
}


def _text(ds: Dataset, keyword: str) -> str | None:
    value: Any = ds.get(keyword)
    if value is None or value == "":
        return None
    return str(value)


def _number(ds: Dataset, keyword: str) -> int | None:
    value = _text(ds, keyword)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def build_identifier(level: QueryRetrieveLevel, **matching: str | None) -> Dataset:
    """C-FIND identifier with the given matching keys and this level's return keys.

    A matching key of None is sent empty, which requests it back.
    """
    ds = Dataset()
    ds.QueryRetrieveLevel = level.value
    for keyword, value in matching.items():
        setattr(ds, keyword, value or "")
    for keyword in RETURN_KEYS[level]:
        if keyword not in ds:
            setattr(ds, keyword, "")
    return ds


def apply_move_response(
    result: RetrieveResult, status: Dataset, identifier: Dataset | None
) -> None:
    """Fold one C-MOVE response into ``result``."""
    for keyword, field in MOVE_COUNTERS.items():
        if keyword in status:
            setattr(result, field, getattr(status, keyword) or 0)

    code = status.Status
    result.status_code = code
    if code in STATUS_PENDING:
        result.status = RetrieveStatus.PENDING
    elif code == STATUS_SUCCESS:
        result.status = RetrieveStatus.SUCCESS
    elif code == STATUS_MOVE_WARNING:
        result.status = RetrieveStatus.WARNING
    else:
        result.status = RetrieveStatus.FAILURE

    if identifier is not None and "FailedSOPInstanceUIDList" in identifier:
        failed = identifier.FailedSOPInstanceUIDList
        if isinstance(failed, str):
            failed = [failed]
        result.failed_sop_instances = [str(uid) for uid in failed]


class DicomOperations:
    """Blocking Query/Retrieve SCU.

    Every call opens its own association with the StudyRoot information model
    and releases it before returning.
    """

    def __init__(self, calling_aet: str, max_pdu: int = 16384):
        self.calling_aet = calling_aet
        self.max_pdu = max_pdu

    def _create_ae(self, timeout: float) -> AE:
        ae = AE(ae_title=self.calling_aet)
        ae.maximum_pdu_size = self.max_pdu
        ae.acse_timeout = timeout
        ae.dimse_timeout = timeout
        ae.network_timeout = timeout
        ae.add_requested_context(StudyRootQueryRetrieveInformationModelFind)
        ae.add_requested_context(StudyRootQueryRetrieveInformationModelMove)
        return ae

    @contextmanager
    def _associate(self, config: AssociationConfig) -> Iterator[Association]:
        """Open an association with the configured peer and release it on exit.

        Raises:
            AssociationError: If the peer rejects or does not answer
        """
        ae = self._create_ae(config.timeout)
        assoc = ae.associate(config.peer_host, config.peer_port, ae_title=config.called_aet)
        if not assoc.is_established:
            logger.error(
                f"No association with {config.called_aet}@{config.peer_host}:{config.peer_port}"
            )
            raise AssociationError(config.called_aet, config.peer_host, config.peer_port)

        try:
            yield assoc
        finally:
            assoc.release()

    def _find(
        self,
        config: AssociationConfig,
        identifier: Dataset,
        parse: Callable[[Dataset], R | None],
    ) -> list[R]:
        """Run one C-FIND and parse every pending match.

        Matches the parser rejects (no UID) are dropped. If the peer aborts
        mid-query, the matches received so far are returned.

        Raises:
            AssociationError: If the archive cannot be reached
            QueryError: If the archive refuses the query, e.g. rejects the
                Find presentation context
        """
        records: list[R] = []
        with self._associate(config) as assoc:
            try:
                responses = assoc.send_c_find(
                    identifier, StudyRootQueryRetrieveInformationModelFind
                )
                for status, match in responses:
                    if not status:
                        logger.warning("C-FIND aborted or timed out, keeping partial results")
                        continue
                    if status.Status in STATUS_PENDING:
                        if match is None:
                            continue
                        record = parse(match)
                        if record is not None:
                            records.append(record)
                    elif status.Status != STATUS_SUCCESS:
                        logger.warning(f"C-FIND status: 0x{status.Status:04x}")
            except (ValueError, RuntimeError) as e:
                raise QueryError(
                    f"C-FIND {identifier.QueryRetrieveLevel} on {config.called_aet} failed: {e}"
                ) from e
        logger.debug(f"C-FIND {identifier.QueryRetrieveLevel}: {len(records)} matches")
        return records

    def find_studies(self, config: AssociationConfig, query: StudyQuery) -> list[StudyRecord]:
        """Raises AssociationError or QueryError, see _find()."""
        identifier = build_identifier(
            QueryRetrieveLevel.STUDY,
            PatientID=query.patient_id,
            StudyInstanceUID=query.study_instance_uid,
        )

        def parse(ds: Dataset) -> StudyRecord | None:
            study_uid = _text(ds, "StudyInstanceUID")
            if study_uid is None:
                return None
            return StudyRecord(
                patient_id=_text(ds, "PatientID"),
                study_instance_uid=study_uid,
                study_date=_text(ds, "StudyDate"),
                study_description=_text(ds, "StudyDescription"),
                modalities_in_study=_text(ds, "ModalitiesInStudy"),
            )

        return self._find(config, identifier, parse)

    def find_series(self, config: AssociationConfig, query: SeriesQuery) -> list[SeriesRecord]:
        """Raises AssociationError or QueryError, see _find()."""
        identifier = build_identifier(
            QueryRetrieveLevel.SERIES,
            StudyInstanceUID=query.study_instance_uid,
            SeriesInstanceUID=query.series_instance_uid,
            Modality=query.modality,
        )

        def parse(ds: Dataset) -> SeriesRecord | None:
            series_uid = _text(ds, "SeriesInstanceUID")
            if series_uid is None:
                return None
            return SeriesRecord(
                study_instance_uid=_text(ds, "StudyInstanceUID") or query.study_instance_uid,
                series_instance_uid=series_uid,
                modality=_text(ds, "Modality"),
                series_description=_text(ds, "SeriesDescription"),
                series_number=_number(ds, "SeriesNumber"),
                number_of_series_related_instances=_number(ds, "NumberOfSeriesRelatedInstances"),
            )

        return self._find(config, identifier, parse)

    def find_images(self, config: AssociationConfig, query: ImageQuery) -> list[InstanceRecord]:
        """Raises AssociationError or QueryError, see _find()."""
        identifier = build_identifier(
            QueryRetrieveLevel.IMAGE,
            StudyInstanceUID=query.study_instance_uid,
            SeriesInstanceUID=query.series_instance_uid,
            SOPInstanceUID=query.sop_instance_uid,
        )

        def parse(ds: Dataset) -> InstanceRecord | None:
            sop_uid = _text(ds, "SOPInstanceUID")
            if sop_uid is None:
                return None
            return InstanceRecord(
                study_instance_uid=_text(ds, "StudyInstanceUID") or query.study_instance_uid,
                series_instance_uid=_text(ds, "SeriesInstanceUID") or query.series_instance_uid,
                sop_instance_uid=sop_uid,
                sop_class_uid=_text(ds, "SOPClassUID"),
                modality=_text(ds, "Modality"),
            )

        return self._find(config, identifier, parse)

    def move(
        self, config: AssociationConfig, request: RetrieveRequest, destination_aet: str
    ) -> RetrieveResult:
        """Run one C-MOVE sending the requested scope to ``destination_aet``.

        An aborted or timed-out move is reported as a failure, with whatever
        counters were received before it.

        Raises:
            AssociationError: If the archive cannot be reached
            TransferError: If the archive refuses the move, e.g. rejects the
                Move presentation context
        """
        identifier = Dataset()
        for keyword, value in request.to_dict().items():
            setattr(identifier, keyword, value)

        result = RetrieveResult()
        with self._associate(config) as assoc:
            try:
                responses = assoc.send_c_move(
                    identifier, destination_aet, StudyRootQueryRetrieveInformationModelMove
                )
                for status, response in responses:
                    if not status:
                        logger.warning("C-MOVE aborted or timed out")
                        result.status = RetrieveStatus.FAILURE
                        continue
                    apply_move_response(result, status, response)
            except (ValueError, RuntimeError) as e:
                raise TransferError(
                    f"C-MOVE {request.level.value} to {destination_aet} failed: {e}"
                ) from e

        if result.status == RetrieveStatus.PENDING:
            # No final response arrived
            result.status = RetrieveStatus.FAILURE

        match result.status:
            case RetrieveStatus.SUCCESS:
                logger.info(
                    f"C-MOVE to {destination_aet}: {result.num_completed} completed, "
                    f"{result.num_failed} failed"
                )
            case RetrieveStatus.WARNING:
                logger.warning(
                    f"C-MOVE to {destination_aet} completed with warnings: "
                    f"{result.num_failed} failed, {result.num_warning} warnings"
                )
            case _:
                code = f"0x{result.status_code:04x}" if result.status_code is not None else "none"
                logger.warning(f"C-MOVE to {destination_aet} failed, status {code}")
        return result
