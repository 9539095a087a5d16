"""Extractors reading saga rows from the legacy table store."""

from .base import Continuation, ExtractionResult, TablePage, TableSource
from .table_extractor import TableExtractor
from .azure_table import AzureTableSource, parse_connection_string
from .memory import InMemoryTableSource
from .odata import format_entity, parse_entity

__all__ = [
    "Continuation",
    "ExtractionResult",
    "TablePage",
    "TableSource",
    "TableExtractor",
    "AzureTableSource",
    "parse_connection_string",
    "InMemoryTableSource",
    "format_entity",
    "parse_entity",
]
