"""Patient anonymization for exported instances."""

from rtexport.services.anonymization.anonymizer import Anonymizer, HashAnonymizer
from rtexport.services.anonymization.key_store import AnonymizationKeyStore, derive_token

__all__ = [
    "Anonymizer",
    "HashAnonymizer",
    "AnonymizationKeyStore",
    "derive_token",
]
