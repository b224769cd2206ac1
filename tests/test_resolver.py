"""
Tests for CrossReferenceResolver.

Covers the examination match, structure set narrowing, plan and dose
selection, registration link qualification and registered source images.
"""

import pytest

from rtexport.services.export.models import (
    DataType,
    ExaminationReference,
    ExportOptions,
    ExportRequest,
    RegistrationLink,
)
from rtexport.services.export.query import QueryCoordinator
from rtexport.services.export.resolver import CrossReferenceResolver, normalize_modality

from tests.utils import (
    CT_SERIES,
    D1,
    D2,
    DOSE_SERIES,
    MR_SERIES,
    PEER,
    PLAN_SERIES,
    REG1,
    REG_SERIES,
    RS1,
    RS_OLD,
    RS_SERIES,
    FakeArchive,
    instance,
    series,
)

ALL_SERIES = [
    series(CT_SERIES, "CT"),
    series(RS_SERIES, "RTSTRUCT"),
    series(PLAN_SERIES, "RTPLAN"),
    series("SE-OTHER-PLAN", "RTPLAN"),
    series(DOSE_SERIES, "RTDOSE"),
    series(MR_SERIES, "MR"),
    series(REG_SERIES, "REG"),
]


def resolver_for(archive: FakeArchive, options: ExportOptions | None = None) -> CrossReferenceResolver:
    return CrossReferenceResolver(QueryCoordinator(archive, PEER), options or ExportOptions())


def only(**flags: bool) -> ExportOptions:
    """Options with every data type off except ``flags``."""
    base = {
        "export_examination": False,
        "export_structure": False,
        "export_plan": False,
        "export_dose": False,
        "export_registrations": False,
    }
    base.update(flags)
    return ExportOptions(**base)


def with_registration(request: ExportRequest, *exams: ExaminationReference, **link: str) -> ExportRequest:
    registration = RegistrationLink(
        name="MR to CT",
        registration_uid=link.get("registration_uid"),
        from_frame_of_reference=link.get("from_for", "FOR-2"),
        to_frame_of_reference=link.get("to_for", "FOR-1"),
    )
    return request.model_copy(update={"examinations": exams, "registrations": (registration,)})


MR_EXAM = ExaminationReference(
    exam_name="MR 1", series_instance_uid=MR_SERIES, frame_of_reference_uid="FOR-2", modality="MR"
)
CBCT_EXAM = ExaminationReference(
    exam_name="CBCT Fx1", series_instance_uid=MR_SERIES, frame_of_reference_uid="FOR-2", modality="CT"
)


class TestNormalizeModality:
    @pytest.mark.parametrize(("value", "expected"), [("PET", "PT"), (" ct ", "CT"), (None, "")])
    def test_normalize(self, value: str | None, expected: str) -> None:
        assert normalize_modality(value) == expected


class TestExaminationAndPlans:
    @pytest.mark.asyncio
    async def test_examination_matched_by_series_uid(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        resolved = await resolver_for(archive, only(export_examination=True)).resolve(
            rt_request, ALL_SERIES
        )

        assert [r.series.series_instance_uid for r in resolved.examination] == [CT_SERIES]
        assert resolved.examination[0].instances is None
        assert resolved.examination[0].data_type == DataType.EXAMINATION

    @pytest.mark.asyncio
    async def test_examination_missing_on_archive(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        resolved = await resolver_for(archive, only(export_examination=True)).resolve(
            rt_request, [series(RS_SERIES, "RTSTRUCT")]
        )
        assert resolved.is_empty()

    @pytest.mark.asyncio
    async def test_only_referenced_plan_series(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        resolved = await resolver_for(archive, only(export_plan=True)).resolve(rt_request, ALL_SERIES)

        assert [r.series.series_instance_uid for r in resolved.plans] == [PLAN_SERIES]

    @pytest.mark.asyncio
    async def test_disabled_types_skip_queries(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        resolved = await resolver_for(archive, only(export_examination=True)).resolve(
            rt_request, ALL_SERIES
        )

        assert resolved.structures == [] and resolved.doses == []
        assert archive.find_calls == []


class TestStructures:
    @pytest.mark.asyncio
    async def test_whole_series_when_only_instance_matches(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        archive.instances = [instance(RS1, RS_SERIES)]

        resolved = await resolver_for(archive, only(export_structure=True)).resolve(
            rt_request, ALL_SERIES
        )

        assert len(resolved.structures) == 1
        assert resolved.structures[0].series.series_instance_uid == RS_SERIES
        assert resolved.structures[0].instances is None

    @pytest.mark.asyncio
    async def test_narrowed_to_referenced_instance(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        archive.instances = [instance(RS1, RS_SERIES), instance(RS_OLD, RS_SERIES)]

        resolved = await resolver_for(archive, only(export_structure=True)).resolve(
            rt_request, ALL_SERIES
        )

        selected = resolved.structures[0].instances
        assert selected is not None
        assert [i.sop_instance_uid for i in selected] == [RS1]

    @pytest.mark.asyncio
    async def test_structure_set_not_on_archive(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        archive.instances = [instance(RS_OLD, RS_SERIES)]

        resolved = await resolver_for(archive, only(export_structure=True)).resolve(
            rt_request, ALL_SERIES
        )
        assert resolved.structures == []

    @pytest.mark.asyncio
    async def test_no_uid_takes_every_structure_series(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = rt_request.model_copy(update={"structure_set_uid": None, "plans": ()})
        candidates = [*ALL_SERIES, series("SE-RS2", "RTSTRUCT")]

        resolved = await resolver_for(archive, only(export_structure=True)).resolve(
            request, candidates
        )

        assert [r.series.series_instance_uid for r in resolved.structures] == [RS_SERIES, "SE-RS2"]

    @pytest.mark.asyncio
    async def test_plan_structure_set_used_when_request_has_none(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = rt_request.model_copy(update={"structure_set_uid": None})
        archive.instances = [instance(RS1, RS_SERIES), instance(RS_OLD, RS_SERIES)]

        resolved = await resolver_for(archive, only(export_structure=True)).resolve(
            request, ALL_SERIES
        )

        selected = resolved.structures[0].instances
        assert selected is not None
        assert [i.sop_instance_uid for i in selected] == [RS1]


class TestDoses:
    @pytest.mark.asyncio
    async def test_only_referenced_doses_image_level(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        archive.instances = [instance(D1, DOSE_SERIES), instance(D2, DOSE_SERIES)]

        resolved = await resolver_for(archive, only(export_dose=True)).resolve(rt_request, ALL_SERIES)

        assert len(resolved.doses) == 1
        selected = resolved.doses[0].instances
        assert selected is not None
        assert [i.sop_instance_uid for i in selected] == [D1]

    @pytest.mark.asyncio
    async def test_single_dose_series_stays_image_level(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        archive.instances = [instance(D1, DOSE_SERIES)]

        resolved = await resolver_for(archive, only(export_dose=True)).resolve(rt_request, ALL_SERIES)

        assert resolved.doses[0].instances is not None

    @pytest.mark.asyncio
    async def test_duplicate_query_results_collapse(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        archive.instances = [instance(D1, DOSE_SERIES), instance(D1, DOSE_SERIES)]

        resolved = await resolver_for(archive, only(export_dose=True)).resolve(rt_request, ALL_SERIES)

        selected = resolved.doses[0].instances
        assert selected is not None
        assert len(selected) == 1

    @pytest.mark.asyncio
    async def test_no_referenced_doses(self, archive: FakeArchive, rt_request: ExportRequest) -> None:
        request = rt_request.model_copy(update={"plans": ()})
        archive.instances = [instance(D1, DOSE_SERIES)]

        resolved = await resolver_for(archive, only(export_dose=True)).resolve(request, ALL_SERIES)

        assert resolved.doses == []
        assert "image" not in archive.find_calls


class TestRegistrations:
    """Tests for registration qualification and registered images."""

    @pytest.mark.asyncio
    async def test_registered_image_included(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = with_registration(rt_request, MR_EXAM)

        resolved = await resolver_for(archive, only(export_registrations=True)).resolve(
            request, ALL_SERIES
        )

        assert [r.series.series_instance_uid for r in resolved.registrations] == [REG_SERIES]
        assert len(resolved.registered_images) == 1
        image = resolved.registered_images[0]
        assert image.series.series_instance_uid == MR_SERIES
        assert image.source_exam_name == "MR 1"
        assert image.data_type == DataType.REGISTERED_IMAGE

    @pytest.mark.asyncio
    async def test_modality_toggle_excludes_source(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = with_registration(rt_request, MR_EXAM)
        options = only(export_registrations=True)
        options.registration_mr = False

        resolved = await resolver_for(archive, options).resolve(request, ALL_SERIES)

        assert resolved.is_empty()

    def test_cbct_governed_by_cbct_toggle(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = with_registration(rt_request, CBCT_EXAM)
        resolver = resolver_for(archive, only(export_registrations=True))

        assert resolver.qualifying_links(request) == []

        resolver.options.registration_cbct = True
        assert len(resolver.qualifying_links(request)) == 1

    def test_cbct_also_needs_its_modality(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        """Test the CBCT toggle does not let a CBCT through when CT is deselected."""
        options = only(export_registrations=True)
        options.registration_cbct = True
        options.registration_ct = False
        request = with_registration(rt_request, CBCT_EXAM)

        assert resolver_for(archive, options).qualifying_links(request) == []

    def test_pet_spelling_accepted(self, archive: FakeArchive, rt_request: ExportRequest) -> None:
        pet = MR_EXAM.model_copy(update={"modality": "PET", "exam_name": "PET 1"})
        request = with_registration(rt_request, pet)

        links = resolver_for(archive, only(export_registrations=True)).qualifying_links(request)

        assert len(links) == 1

    @pytest.mark.asyncio
    async def test_link_to_other_frame_of_reference_ignored(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = with_registration(rt_request, MR_EXAM, to_for="FOR-9")

        resolved = await resolver_for(archive, only(export_registrations=True)).resolve(
            request, ALL_SERIES
        )
        assert resolved.is_empty()

    def test_primary_without_frame_of_reference(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = with_registration(rt_request, MR_EXAM).model_copy(
            update={"frame_of_reference_uid": None}
        )
        resolver = resolver_for(archive, only(export_registrations=True))

        assert resolver.qualifying_links(request) == []

    def test_incomplete_link_ignored(self, archive: FakeArchive, rt_request: ExportRequest) -> None:
        request = with_registration(rt_request, MR_EXAM, from_for="")

        assert resolver_for(archive, only(export_registrations=True)).qualifying_links(request) == []

    @pytest.mark.asyncio
    async def test_registration_narrowed_by_uid(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        archive.instances = [instance(REG1, REG_SERIES), instance("REG-OTHER", REG_SERIES)]
        request = with_registration(rt_request, MR_EXAM, registration_uid=REG1)

        resolved = await resolver_for(archive, only(export_registrations=True)).resolve(
            request, ALL_SERIES
        )

        selected = resolved.registrations[0].instances
        assert selected is not None
        assert [i.sop_instance_uid for i in selected] == [REG1]

    @pytest.mark.asyncio
    async def test_primary_series_not_a_registered_image(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        primary = ExaminationReference(
            exam_name="CT 1", series_instance_uid=CT_SERIES, frame_of_reference_uid="FOR-2", modality="CT"
        )
        request = with_registration(rt_request, primary, MR_EXAM)

        resolved = await resolver_for(archive, only(export_registrations=True)).resolve(
            request, ALL_SERIES
        )

        assert [r.series.series_instance_uid for r in resolved.registered_images] == [MR_SERIES]

    @pytest.mark.asyncio
    async def test_source_missing_on_archive(
        self, archive: FakeArchive, rt_request: ExportRequest
    ) -> None:
        request = with_registration(rt_request, MR_EXAM)
        without_mr = [s for s in ALL_SERIES if s.series_instance_uid != MR_SERIES]

        resolved = await resolver_for(archive, only(export_registrations=True)).resolve(
            request, without_mr
        )

        assert resolved.registered_images == []
