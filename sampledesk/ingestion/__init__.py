"""
Training-data ingestion pipeline module.

Exports:
    parse_file: Open a lazy raw-record stream for an uploaded file
    detect_file_type: Resolve a file type from name / MIME type
    ParseStream: Forward-only record stream with collected warnings
    normalize: Map a raw record onto the canonical sample shape
    normalize_with_reason: Same, also returning why a record was dropped
    CanonicalRecord: Validated question/answer record
"""

from sampledesk.ingestion.normalizer import (
    CanonicalRecord,
    normalize,
    normalize_with_reason,
)
from sampledesk.ingestion.parser import (
    ParseStream,
    detect_file_type,
    parse_file,
)

__all__ = [
    # Parser exports
    "parse_file",
    "detect_file_type",
    "ParseStream",
    # Normalizer exports
    "normalize",
    "normalize_with_reason",
    "CanonicalRecord",
]
