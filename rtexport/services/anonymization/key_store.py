"""Persistent original-ID to anonymous-token mapping.

The key file is a human-editable JSON document::

    {
      "Mappings": {
        "12345": "A1B2C3D4E"
      }
    }

A token, once written, is never regenerated as long as the file is kept.
"""

import hashlib
import json
import os
import threading
from pathlib import Path

from rtexport.exceptions import AnonymizationError
from rtexport.utils.logger import logger

MAPPINGS_KEY = "Mappings"


def derive_token(purpose: str, original: str, salt: str) -> str:
    """Deterministic salted token: ``A`` + first four SHA-256 bytes as hex."""
    digest = hashlib.sha256(f"{purpose}:{original}:{salt}".encode()).digest()
    return "A" + digest[:4].hex().upper()


class AnonymizationKeyStore:
    """Thread-safe, lazily loaded mapping persisted as JSON.

    Every read-modify-write cycle runs under a single lock, so two tokens
    requested back-to-back from different receiver threads cannot lose an
    update.
    """

    def __init__(self, path: str | Path, salt: str, purpose: str = "PatientID"):
        """Initialize the key store.

        Args:
            path: Location of the JSON key file (created on first new token)
            salt: Salt mixed into every derived token
            purpose: Purpose prefix for persisted patient tokens
        """
        self.path = Path(path)
        self.salt = salt
        self.purpose = purpose
        self._lock = threading.Lock()
        self._mappings: dict[str, str] | None = None

    def _read_file(self) -> dict[str, str]:
        """Read mappings from disk. Caller holds the lock.

        Raises:
            AnonymizationError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            return {}
        try:
            content = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AnonymizationError(f"Cannot read anonymization key {self.path}: {e}") from e

        mappings = content.get(MAPPINGS_KEY) if isinstance(content, dict) else None
        if mappings is None:
            return {}
        if not isinstance(mappings, dict):
            raise AnonymizationError(f"'{MAPPINGS_KEY}' in {self.path} is not an object")
        return {str(k): str(v) for k, v in mappings.items()}

    def _write_file(self, mappings: dict[str, str]) -> None:
        """Write mappings to disk atomically. Caller holds the lock.

        Raises:
            AnonymizationError: If the file cannot be written
        """
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps({MAPPINGS_KEY: mappings}, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise AnonymizationError(f"Cannot write anonymization key {self.path}: {e}") from e

    def _ensure_loaded(self) -> dict[str, str]:
        if self._mappings is None:
            self._mappings = self._read_file()
            logger.debug(f"Loaded {len(self._mappings)} anonymization mappings from {self.path}")
        return self._mappings

    def get_or_create_token(self, original_id: str) -> str:
        """Return the token for ``original_id``, creating and persisting it if new.

        If the key file cannot be read or written, a non-persisted derived
        token is returned so the export can go on. That token may differ from
        one saved earlier under a different salt or by hand.
        """
        with self._lock:
            try:
                mappings = self._ensure_loaded()
            except AnonymizationError as e:
                logger.error(f"{e}; using non-persisted token for this patient")
                return derive_token(self.purpose, original_id, self.salt)

            token = mappings.get(original_id)
            if token:
                return token

            token = derive_token(self.purpose, original_id, self.salt)
            mappings[original_id] = token
            try:
                self._write_file(mappings)
            except AnonymizationError as e:
                logger.error(f"{e}; token for this patient is not persisted")
            else:
                logger.info(f"Created anonymization token {token}")
            return token

    def derive(self, purpose: str, original: str) -> str:
        """Derive a non-persisted token with this store's salt."""
        return derive_token(purpose, original, self.salt)

    def mappings(self) -> dict[str, str]:
        """Snapshot of the current mappings.

        Raises:
            AnonymizationError: If the key file cannot be read
        """
        with self._lock:
            return dict(self._ensure_loaded())

    def set_mapping(self, original_id: str, token: str) -> None:
        """Set (or overwrite) a mapping in memory; call save() to persist."""
        with self._lock:
            self._ensure_loaded()[original_id] = token

    def remove_mapping(self, original_id: str) -> bool:
        """Remove a mapping in memory; call save() to persist.

        Returns:
            True if a mapping was removed
        """
        with self._lock:
            return self._ensure_loaded().pop(original_id, None) is not None

    def save(self) -> None:
        """Validate and persist the current mappings.

        Raises:
            AnonymizationError: If a mapping is blank or the file cannot be written
        """
        with self._lock:
            mappings = self._ensure_loaded()
            seen_tokens: set[str] = set()
            for original, token in mappings.items():
                if not original.strip():
                    raise AnonymizationError("All mappings must have an original ID")
                if not token.strip():
                    raise AnonymizationError(f"Mapping for '{original}' has no anonymized ID")
                if token in seen_tokens:
                    logger.warning(f"Anonymized ID {token} is used by more than one patient")
                seen_tokens.add(token)
            self._write_file(mappings)

    def reload(self) -> None:
        """Forget cached mappings; the next access reads the file again."""
        with self._lock:
            self._mappings = None
