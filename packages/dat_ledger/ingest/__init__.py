"""DAT ingestion: line sources, record shapes, and the streaming extractor."""

from .extractor import DatExtractor, extract_records, parse_dat_bytes, parse_dat_file
from .shapes import DEFAULT_SHAPES, RecordShape
from .sources import DatFileSource, iter_lines_from_bytes

__all__ = [
    "DEFAULT_SHAPES",
    "DatExtractor",
    "DatFileSource",
    "RecordShape",
    "extract_records",
    "iter_lines_from_bytes",
    "parse_dat_bytes",
    "parse_dat_file",
]
