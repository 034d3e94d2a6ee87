"""Payload assembly and local archival."""

from .archive import ArchiveWriter, archive_filename
from .assembler import assemble_payload, selection_predicate

__all__ = [
    "ArchiveWriter",
    "archive_filename",
    "assemble_payload",
    "selection_predicate",
]
