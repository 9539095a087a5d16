"""Store clients handed to the routes; tests replace them through dependency overrides."""

from functools import lru_cache

from fastapi import HTTPException

from ..errors import ConfigurationError
from ..extractors.base import TableSource
from ..factories import create_document_store, create_table_source
from ..loaders.base import DocumentStore
from ..models.migration import SourceConfig, TargetConfig


@lru_cache()
def get_source_config() -> SourceConfig:
    return SourceConfig.from_dict({})


@lru_cache()
def get_target_config() -> TargetConfig:
    return TargetConfig.from_dict({})


def get_table_source() -> TableSource:
    try:
        return create_table_source(get_source_config())
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))


def get_document_store() -> DocumentStore:
    try:
        return create_document_store(get_target_config())
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
