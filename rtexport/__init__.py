"""rtexport - DICOM query/retrieve export of radiotherapy examinations."""

__version__ = "0.1.0"
