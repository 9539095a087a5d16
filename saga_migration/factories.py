"""Construction of store clients from configuration."""

from .errors import ConfigurationError
from .extractors.azure_table import AzureTableSource
from .extractors.base import TableSource
from .loaders.base import DocumentStore
from .loaders.cosmos import CosmosDocumentStore
from .models.migration import SourceConfig, TargetConfig


def create_table_source(config: SourceConfig) -> TableSource:
    """Create the legacy table store client."""
    if not config.connection_string:
        raise ConfigurationError(
            "No table storage connection string; set source.connection_string"
            " or AZURE_STORAGE_CONNECTION_STRING"
        )
    return AzureTableSource.from_connection_string(config.connection_string, config)


def create_document_store(config: TargetConfig) -> DocumentStore:
    """Create the target document store client."""
    if not config.endpoint or not config.key:
        raise ConfigurationError(
            "No Cosmos DB credentials; set target.endpoint and target.key"
            " or COSMOS_ENDPOINT and COSMOS_KEY"
        )
    return CosmosDocumentStore(config)
