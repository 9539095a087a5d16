"""Azure Cosmos DB document store using the SQL API REST interface."""

import base64
import hashlib
import hmac
import json
import logging
from email.utils import formatdate
from typing import Dict, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import DocumentStore, StoredDocument
from ..errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    StoreError,
)
from ..models.migration import TargetConfig

logger = logging.getLogger(__name__)

# x-ms-substatus of a 404 whose database or container does not exist
OWNER_RESOURCE_MISSING = "1003"


class CosmosDocumentStore(DocumentStore):
    """
    Document store backed by the Cosmos DB REST API.

    Supports:
    - Master key authorization
    - Create, upsert, replace (If-Match) and delete per partition key
    - Retry with exponential backoff on throttling (429) and server errors
    """

    API_VERSION = "2018-12-31"

    def __init__(self, config: TargetConfig, session: Optional[requests.Session] = None):
        """
        Initialize the Cosmos DB store.

        Args:
            config: Endpoint, key and database of the target account
            session: Custom requests session
        """
        if not config.endpoint or not config.key or not config.database:
            raise ConfigurationError("Cosmos DB endpoint, key and database are required")
        self.config = config
        self.endpoint = config.endpoint.rstrip("/")
        self.database = config.database
        self._key = base64.b64decode(config.key)
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retry_config = self.config.retry_config
        retries = Retry(
            total=retry_config.get("max_retries", 3),
            backoff_factor=retry_config.get("backoff_factor", 2.0),
            status_forcelist=[429, 500, 502, 503, 504],
            respect_retry_after_header=True,
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def authorization(self, verb: str, resource_type: str, resource_link: str, date: str) -> str:
        """Compute the master key authorization token for a request."""
        text = f"{verb.lower()}\n{resource_type.lower()}\n{resource_link}\n{date.lower()}\n\n"
        digest = hmac.new(self._key, text.encode("utf-8"), hashlib.sha256).digest()
        signature = base64.b64encode(digest).decode("ascii")
        return quote(f"type=master&ver=1.0&sig={signature}", safe="")

    def _collection_link(self, container: str) -> str:
        return f"dbs/{self.database}/colls/{container}"

    def _headers(
        self,
        verb: str,
        resource_type: str,
        resource_link: str,
        partition_key: Optional[str] = None
    ) -> Dict[str, str]:
        date = formatdate(usegmt=True)
        headers = {
            "x-ms-date": date,
            "x-ms-version": self.API_VERSION,
            "Authorization": self.authorization(verb, resource_type, resource_link, date),
            "Accept": "application/json",
        }
        if partition_key is not None:
            headers["x-ms-documentdb-partitionkey"] = json.dumps([partition_key])
        return headers

    def _request(
        self,
        verb: str,
        resource_link: str,
        url_path: str,
        partition_key: Optional[str] = None,
        resource_type: str = "docs",
        body: Optional[bytes] = None,
        extra_headers: Optional[Dict[str, str]] = None
    ) -> requests.Response:
        headers = self._headers(verb, resource_type, resource_link, partition_key)
        if body is not None:
            headers["Content-Type"] = "application/json"
        if extra_headers:
            headers.update(extra_headers)

        try:
            return self._session.request(
                verb,
                f"{self.endpoint}/{url_path}",
                data=body,
                headers=headers,
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise StoreError(f"Cosmos DB unreachable: {e}") from e

    def _check(self, response: requests.Response, item: str) -> None:
        status = response.status_code
        if status == 404:
            if response.headers.get("x-ms-substatus") == OWNER_RESOURCE_MISSING:
                raise NotFoundError(f"{item}: database or container does not exist", status_code=status)
            raise NotFoundError(f"{item} not found", status_code=status)
        if status == 409:
            raise ConflictError(f"{item} already exists", status_code=status)
        if status == 412:
            raise PreconditionFailedError(f"{item} was modified concurrently", status_code=status)
        if not response.ok:
            raise StoreError(f"{item}: {status} {response.text[:200]}", status_code=status)

    def _document_missing(self, response: requests.Response) -> bool:
        """True for a 404 about the document itself, not its database or container."""
        return (
            response.status_code == 404
            and response.headers.get("x-ms-substatus") != OWNER_RESOURCE_MISSING
        )

    def _document(self, response: requests.Response, partition_key: str) -> StoredDocument:
        body = response.json()
        return StoredDocument(
            id=body.get("id", ""),
            partition_key=partition_key,
            body=body,
            etag=response.headers.get("etag") or body.get("_etag"),
        )

    def _item_path(self, container: str, item_id: str) -> str:
        return f"{self._collection_link(container)}/docs/{quote(item_id, safe='')}"

    def read_item(self, container: str, item_id: str, partition_key: str) -> Optional[StoredDocument]:
        link = f"{self._collection_link(container)}/docs/{item_id}"
        response = self._request("GET", link, self._item_path(container, item_id), partition_key)
        if self._document_missing(response):
            return None
        self._check(response, f"Document {item_id}")
        return self._document(response, partition_key)

    def create_item(self, container: str, partition_key: str, body: bytes) -> StoredDocument:
        link = self._collection_link(container)
        response = self._request("POST", link, f"{link}/docs", partition_key, body=body)
        self._check(response, f"Document in partition {partition_key}")
        return self._document(response, partition_key)

    def upsert_item(self, container: str, partition_key: str, body: bytes) -> StoredDocument:
        link = self._collection_link(container)
        response = self._request(
            "POST",
            link,
            f"{link}/docs",
            partition_key,
            body=body,
            extra_headers={"x-ms-documentdb-is-upsert": "True"},
        )
        self._check(response, f"Document in partition {partition_key}")
        return self._document(response, partition_key)

    def replace_item(
        self,
        container: str,
        item_id: str,
        partition_key: str,
        body: bytes,
        if_match: Optional[str] = None
    ) -> StoredDocument:
        link = f"{self._collection_link(container)}/docs/{item_id}"
        response = self._request(
            "PUT",
            link,
            self._item_path(container, item_id),
            partition_key,
            body=body,
            extra_headers={"If-Match": if_match} if if_match else None,
        )
        self._check(response, f"Document {item_id}")
        return self._document(response, partition_key)

    def delete_item(
        self,
        container: str,
        item_id: str,
        partition_key: str,
        if_match: Optional[str] = None
    ) -> bool:
        link = f"{self._collection_link(container)}/docs/{item_id}"
        response = self._request(
            "DELETE",
            link,
            self._item_path(container, item_id),
            partition_key,
            extra_headers={"If-Match": if_match} if if_match else None,
        )
        if self._document_missing(response):
            return False
        self._check(response, f"Document {item_id}")
        return True

    def validate_connection(self) -> bool:
        link = f"dbs/{self.database}"
        try:
            response = self._request("GET", link, link, resource_type="dbs")
        except StoreError as e:
            logger.error(f"Cannot reach Cosmos DB: {e}")
            return False
        if not response.ok:
            logger.error(f"Database {self.database} is not accessible: {response.status_code}")
        return response.ok

    def close(self) -> None:
        self._session.close()
