"""Anonymization strategies applied to received instances before they hit disk."""

from abc import ABC, abstractmethod

from pydicom import Dataset

from rtexport.services.anonymization.key_store import AnonymizationKeyStore
from rtexport.utils.logger import logger

# Hashed from the original PatientID so one patient's values stay consistent
HASHED_ATTRIBUTES = ("PatientName", "AccessionNumber", "InstitutionName")

BLANKED_ATTRIBUTES = (
    "PatientBirthDate",
    "PatientAddress",
    "PatientTelephoneNumbers",
    "ReferringPhysicianName",
)

REMOVED_ATTRIBUTES = ("OtherPatientIDs", "OtherPatientNames", "OtherPatientIDsSequence")


class Anonymizer(ABC):
    """Rewrites patient-identifying attributes of received instances."""

    @abstractmethod
    def patient_folder(self, mrn: str) -> str:
        """Folder name replacing the patient's MRN in the export tree."""

    @abstractmethod
    def anonymize_dataset(self, ds: Dataset) -> Dataset:
        """Rewrite ``ds`` in place and return it. UIDs must be left untouched."""


class HashAnonymizer(Anonymizer):
    """Salted-hash anonymizer backed by a persisted key store.

    PatientID is replaced with the persisted token; the secondary identifying
    attributes get non-persisted tokens derived from the original PatientID.
    """

    def __init__(self, key_store: AnonymizationKeyStore):
        self.key_store = key_store

    def patient_folder(self, mrn: str) -> str:
        return self.key_store.get_or_create_token(mrn)

    def anonymize_dataset(self, ds: Dataset) -> Dataset:
        original_id = str(getattr(ds, "PatientID", "") or "").strip()

        if original_id:
            ds.PatientID = self.key_store.get_or_create_token(original_id)
        else:
            logger.warning(
                f"Instance {getattr(ds, 'SOPInstanceUID', '?')} has no PatientID, "
                "blanking identifying attributes"
            )

        for keyword in HASHED_ATTRIBUTES:
            if keyword not in ds and keyword != "PatientName":
                continue
            if original_id:
                setattr(ds, keyword, self.key_store.derive(keyword, original_id))
            else:
                setattr(ds, keyword, "")

        for keyword in BLANKED_ATTRIBUTES:
            if keyword in ds:
                setattr(ds, keyword, "")

        for keyword in REMOVED_ATTRIBUTES:
            if keyword in ds:
                delattr(ds, keyword)

        ds.PatientIdentityRemoved = "YES"
        return ds
