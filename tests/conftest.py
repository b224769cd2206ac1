"""Shared fixtures for rtexport tests."""

from pathlib import Path

import pytest

from rtexport.services.anonymization import AnonymizationKeyStore, HashAnonymizer
from rtexport.services.dicom.handlers import StoreHandler
from rtexport.services.export.models import ExportRequest, PlanReference
from rtexport.services.export.session import ExportSession

from tests.utils import (
    CT_SERIES,
    D1,
    PLAN_SERIES,
    RP1,
    RS1,
    STUDY_UID,
    FakeArchive,
    dataset_for,
)


@pytest.fixture
def export_root(tmp_path: Path) -> Path:
    root = tmp_path / "export"
    root.mkdir()
    return root


@pytest.fixture
def session(export_root: Path) -> ExportSession:
    return ExportSession(export_root=export_root, local_aet="RTEXPORT")


@pytest.fixture
def key_store(tmp_path: Path) -> AnonymizationKeyStore:
    return AnonymizationKeyStore(tmp_path / "AnonymizationKey.json", salt="test-salt")


@pytest.fixture
def anonymized_session(export_root: Path, key_store: AnonymizationKeyStore) -> ExportSession:
    return ExportSession(
        export_root=export_root, local_aet="RTEXPORT", anonymizer=HashAnonymizer(key_store)
    )


@pytest.fixture
def archive() -> FakeArchive:
    return FakeArchive()


@pytest.fixture
def delivering_archive(archive: FakeArchive, session: ExportSession) -> FakeArchive:
    """Archive that pushes every moved instance through a real store handler."""
    handler = StoreHandler(session)
    archive.deliver = lambda record: handler.store(dataset_for(record))
    return archive


@pytest.fixture
def rt_request() -> ExportRequest:
    """Examination "CT 1" of patient 12345 with one plan referencing one dose."""
    return ExportRequest(
        mrn="12345",
        patient_name="Doe^Jane",
        course_name="C1",
        exam_name="CT 1",
        study_instance_uid=STUDY_UID,
        series_instance_uid=CT_SERIES,
        frame_of_reference_uid="FOR-1",
        structure_set_uid=RS1,
        plans=(
            PlanReference(
                plan_id="Plan1",
                series_instance_uid=PLAN_SERIES,
                sop_instance_uid=RP1,
                dose_sop_instance_uids=(D1,),
                structure_set_uid=RS1,
            ),
        ),
    )
