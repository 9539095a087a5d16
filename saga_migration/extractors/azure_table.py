"""Azure Table Storage source using the Table service REST API."""

import base64
import hashlib
import hmac
import logging
import uuid
from email.utils import formatdate
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, quote, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import Continuation, TablePage, TableSource
from ..errors import ConfigurationError, NotFoundError, StoreError
from ..models.migration import SourceConfig

logger = logging.getLogger(__name__)

DEVELOPMENT_ACCOUNT = "devstoreaccount1"
DEVELOPMENT_KEY = (
    "Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw=="
)
DEVELOPMENT_ENDPOINT = "http://127.0.0.1:10002/devstoreaccount1"


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """
    Parse a storage account connection string.

    Returns a dictionary with ``account_name``, ``account_key`` (may be
    empty), ``endpoint`` and ``sas_token`` (may be empty).
    """
    settings = {}
    for part in connection_string.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ConfigurationError(f"Malformed connection string segment: {key!r}")
        settings[key.strip()] = value.strip()

    if settings.get("UseDevelopmentStorage", "").lower() == "true":
        return {
            "account_name": DEVELOPMENT_ACCOUNT,
            "account_key": DEVELOPMENT_KEY,
            "endpoint": settings.get("DevelopmentStorageProxyUri", DEVELOPMENT_ENDPOINT),
            "sas_token": "",
        }

    account_name = settings.get("AccountName", "")
    endpoint = settings.get("TableEndpoint")
    if not endpoint:
        if not account_name:
            raise ConfigurationError("Connection string needs AccountName or TableEndpoint")
        protocol = settings.get("DefaultEndpointsProtocol", "https")
        suffix = settings.get("EndpointSuffix", "core.windows.net")
        endpoint = f"{protocol}://{account_name}.table.{suffix}"

    if not account_name:
        account_name = urlparse(endpoint).hostname.split(".")[0]

    sas_token = settings.get("SharedAccessSignature", "")
    account_key = settings.get("AccountKey", "")
    if not account_key and not sas_token:
        raise ConfigurationError("Connection string needs AccountKey or SharedAccessSignature")

    return {
        "account_name": account_name,
        "account_key": account_key,
        "endpoint": endpoint.rstrip("/"),
        "sas_token": sas_token,
    }


def quote_filter_value(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _is_guid(value: str) -> bool:
    try:
        return str(uuid.UUID(value)) == value.lower()
    except ValueError:
        return False


class AzureTableSource(TableSource):
    """
    Reads entities through the Table service REST API.

    Supports:
    - Shared key (SharedKeyLite) and SAS authentication
    - The storage emulator (UseDevelopmentStorage=true)
    - Continuation tokens for paged scans
    - Retry with exponential backoff on throttling and server errors
    """

    API_VERSION = "2019-02-02"

    def __init__(
        self,
        account_name: str,
        endpoint: str,
        account_key: Optional[str] = None,
        sas_token: Optional[str] = None,
        config: Optional[SourceConfig] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the table source.

        Args:
            account_name: Storage account name
            endpoint: Table endpoint URL
            account_key: Base64 account key for shared key auth
            sas_token: Shared access signature, used when no key is given
            config: Retry and timeout settings
            session: Custom requests session
        """
        if not account_key and not sas_token:
            raise ConfigurationError("An account key or a SAS token is required")
        self.account_name = account_name
        self.endpoint = endpoint.rstrip("/")
        self.account_key = account_key
        self.sas_params = dict(parse_qsl(sas_token.lstrip("?"))) if sas_token else {}
        self.config = config or SourceConfig()
        self._session = session or self._create_session()

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str,
        config: Optional[SourceConfig] = None,
        session: Optional[requests.Session] = None
    ) -> "AzureTableSource":
        settings = parse_connection_string(connection_string)
        return cls(
            account_name=settings["account_name"],
            endpoint=settings["endpoint"],
            account_key=settings["account_key"] or None,
            sas_token=(config.sas_token if config and config.sas_token else settings["sas_token"]) or None,
            config=config,
            session=session,
        )

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retry_config = self.config.retry_config
        retries = Retry(
            total=retry_config.get("max_retries", 3),
            backoff_factor=retry_config.get("backoff_factor", 2.0),
            status_forcelist=[429, 500, 502, 503, 504],
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def sign(self, date: str, url: str) -> str:
        """Compute the SharedKeyLite authorization header for a request."""
        canonical_resource = f"/{self.account_name}{urlparse(url).path}"
        string_to_sign = f"{date}\n{canonical_resource}"
        key = base64.b64decode(self.account_key)
        digest = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).digest()
        return f"SharedKeyLite {self.account_name}:{base64.b64encode(digest).decode('ascii')}"

    def _headers(self, url: str) -> Dict[str, str]:
        date = formatdate(usegmt=True)
        headers = {
            "x-ms-date": date,
            "x-ms-version": self.API_VERSION,
            "Accept": "application/json;odata=minimalmetadata",
            "DataServiceVersion": "3.0;NetFx",
            "MaxDataServiceVersion": "3.0;NetFx",
        }
        if self.account_key:
            headers["Authorization"] = self.sign(date, url)
        return headers

    def _query(
        self,
        table: str,
        filter: Optional[str],
        continuation: Optional[Continuation],
        page_size: int
    ) -> TablePage:
        url = f"{self.endpoint}/{quote(table)}()"
        params: Dict[str, Any] = {"$top": page_size}
        if filter:
            params["$filter"] = filter
        if continuation:
            if continuation.next_partition_key is not None:
                params["NextPartitionKey"] = continuation.next_partition_key
            if continuation.next_row_key is not None:
                params["NextRowKey"] = continuation.next_row_key
        params.update(self.sas_params)

        try:
            response = self._session.get(
                url, params=params, headers=self._headers(url), timeout=self.config.timeout
            )
        except requests.RequestException as e:
            raise StoreError(f"Table service unreachable: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"Table {table} not found", status_code=404)
        if not response.ok:
            raise StoreError(
                f"Query of {table} failed with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        payload = response.json()
        next_pk = response.headers.get("x-ms-continuation-NextPartitionKey")
        next_rk = response.headers.get("x-ms-continuation-NextRowKey")
        next_page = Continuation(next_pk, next_rk) if next_pk or next_rk else None

        logger.debug(f"Fetched {len(payload.get('value', []))} entities from {table}")
        return TablePage(entities=payload.get("value", []), continuation=next_page)

    def query_page(
        self,
        table: str,
        continuation: Optional[Continuation] = None,
        page_size: int = 1000
    ) -> TablePage:
        return self._query(table, None, continuation, page_size)

    def find_by_property(self, table: str, name: str, value: str) -> List[Dict[str, Any]]:
        condition = f"{name} eq {quote_filter_value(value)}"
        if _is_guid(value):
            condition = f"({name} eq guid'{value}') or ({condition})"

        entities: List[Dict[str, Any]] = []
        continuation = None
        try:
            while True:
                page = self._query(table, condition, continuation, self.config.page_size)
                entities.extend(page.entities)
                if page.continuation is None or page.continuation == continuation:
                    break
                continuation = page.continuation
        except NotFoundError:
            return []
        return entities

    def close(self) -> None:
        self._session.close()
