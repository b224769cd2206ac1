"""Folder naming helpers for the export tree."""

from pathlib import Path

# Characters rejected in file names on at least one supported platform
INVALID_FOLDER_CHARS = frozenset('<>:"/\\|?*') | frozenset(chr(i) for i in range(32))

UNKNOWN_FOLDER = "Unknown"


def sanitize_folder_name(name: str | None) -> str:
    """Make a string safe to use as a single path component.

    Every invalid character is replaced with ``_`` and surrounding whitespace
    is trimmed. A name made only of dots would point at the current or parent
    directory and becomes ``_``.

    Args:
        name: Raw name (MRN, course, examination name, ...)

    Returns:
        Sanitized name, or ``Unknown`` for empty input
    """
    if not name or not name.strip():
        return UNKNOWN_FOLDER
    cleaned = "".join("_" if ch in INVALID_FOLDER_CHARS else ch for ch in name).strip()
    if not cleaned:
        return UNKNOWN_FOLDER
    if set(cleaned) == {"."}:
        return "_"
    return cleaned


def examination_root(
    export_root: Path, patient_folder: str, course_name: str, exam_name: str
) -> Path:
    """Build ``<root>/<patient>/<course>/<exam>`` with sanitized components."""
    return (
        export_root
        / sanitize_folder_name(patient_folder)
        / sanitize_folder_name(course_name)
        / sanitize_folder_name(exam_name)
    )
