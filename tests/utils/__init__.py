"""
Test utilities and helpers for rtexport tests.
"""

from .factories import (
    CT_IMAGES,
    CT_SERIES,
    D1,
    D2,
    DOSE_SERIES,
    MR_IMAGE,
    MR_SERIES,
    PEER,
    PLAN_SERIES,
    REG1,
    REG_SERIES,
    RP1,
    RS1,
    RS_OLD,
    RS_SERIES,
    STUDY_UID,
    FakeArchive,
    FakeReceiver,
    dataset_for,
    files_under,
    instance,
    make_dataset,
    series,
)

__all__ = [
    "CT_IMAGES",
    "CT_SERIES",
    "D1",
    "D2",
    "DOSE_SERIES",
    "MR_IMAGE",
    "MR_SERIES",
    "PEER",
    "PLAN_SERIES",
    "REG1",
    "REG_SERIES",
    "RP1",
    "RS1",
    "RS_OLD",
    "RS_SERIES",
    "STUDY_UID",
    "FakeArchive",
    "FakeReceiver",
    "dataset_for",
    "files_under",
    "instance",
    "make_dataset",
    "series",
]
