"""Provider adapter contract and shared HTTP plumbing.

Every third-party integration implements the same four operations:
probe, pull, push and decode_webhook. The sync orchestrator and webhook
ingestor only ever talk to this interface.
"""

import base64
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Mapping, Optional

import httpx

from connector_hub.core.config import settings
from connector_hub.core.exceptions import ConnectorConnectionError, FieldError
from connector_hub.services import field_mapping
from connector_hub.services.field_mapping import MappingRule

logger = logging.getLogger("connector_hub.adapters")


@dataclass
class ProbeResult:
    ok: bool
    message: str


@dataclass
class CanonicalRecord:
    """A remote record translated into local field names."""
    entity_type: str
    external_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class RecordBatch:
    records: List[CanonicalRecord] = field(default_factory=list)
    pages: int = 0


@dataclass
class LocalRecord:
    """A local row offered to push()."""
    entity_type: str
    local_id: int
    data: Dict[str, Any]
    external_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PushResult:
    entity_type: str
    local_id: int
    ok: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
    remote: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """Decoded webhook envelope.

    `record` is set when the payload carries the entity itself;
    `refresh_entities` lists entity types to re-pull when it only carries
    references.
    """
    event_type: str
    record: Optional[CanonicalRecord] = None
    refresh_entities: List[str] = field(default_factory=list)


def jsonable(value: Any) -> Any:
    """Make mapped values safe for JSON request bodies."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


class ProviderAdapter(ABC):
    """Base class for all provider adapters.

    Subclasses implement probe, pull, push and decode_webhook, and declare
    their default field mappings and webhook signature header.
    """

    name: str = ""
    signature_header: str = "X-Webhook-Signature"
    # entity types this provider can read / write
    pull_entities: tuple = ()
    push_entities: tuple = ()

    @abstractmethod
    def probe(self, config: Dict[str, Any]) -> ProbeResult:
        """Lightweight reachability/auth check. Never raises for remote failures."""
        ...

    @abstractmethod
    def pull(
        self,
        config: Dict[str, Any],
        entity_types: List[str],
        mapping: List[MappingRule],
    ) -> RecordBatch:
        """Fetch every page of the requested entity types as canonical records."""
        ...

    @abstractmethod
    def push(
        self,
        config: Dict[str, Any],
        records: List[LocalRecord],
        mapping: List[MappingRule],
    ) -> List[PushResult]:
        """Write local records to the provider, one outcome per record."""
        ...

    @abstractmethod
    def decode_webhook(
        self,
        headers: Mapping[str, str],
        raw_body: bytes,
        mapping: List[MappingRule],
    ) -> WebhookEvent:
        """Turn a provider webhook envelope into a canonical event."""
        ...

    def default_mappings(self) -> List[MappingRule]:
        """Built-in field mappings; tenant FieldMapping rows override them."""
        return []

    # ---- Webhook signatures ----

    def expected_signature(self, secret: str, raw_body: bytes) -> str:
        """Hex HMAC-SHA256 of the raw body."""
        return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    def verify_signature(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Constant-time check of the provider's signature header."""
        supplied = lower_headers(headers).get(self.signature_header.lower())
        if not supplied:
            return False
        expected = self.expected_signature(secret, raw_body)
        return hmac.compare_digest(supplied.strip().encode("utf-8"), expected.encode("utf-8"))

    # ---- Mapping helpers ----

    def to_canonical(
        self,
        entity_type: str,
        external_id: Any,
        remote: Dict[str, Any],
        mapping: List[MappingRule],
    ) -> CanonicalRecord:
        outcome = field_mapping.apply(field_mapping.rules_for(mapping, entity_type), field_mapping.INBOUND, remote)
        record = CanonicalRecord(
            entity_type=entity_type,
            external_id=str(external_id) if external_id is not None else "",
            data=outcome.data,
            extra=remote,
            warnings=outcome.warnings,
            errors=outcome.errors,
        )
        if not record.external_id:
            record.errors.append(FieldError("external_id", "remote record has no id"))
        return record

    def to_remote(self, record: LocalRecord, mapping: List[MappingRule]) -> field_mapping.MappingOutcome:
        outcome = field_mapping.apply(
            field_mapping.rules_for(mapping, record.entity_type), field_mapping.OUTBOUND, record.data,
        )
        outcome.data = jsonable(outcome.data)
        return outcome


class HTTPProviderAdapter(ProviderAdapter):
    """Adapter base for REST providers reached through httpx.

    `transport` is injectable so tests can swap in httpx.MockTransport.
    """

    def __init__(self, transport: Optional[httpx.BaseTransport] = None, timeout: Optional[float] = None):
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.ADAPTER_TIMEOUT_SECONDS

    def client(self, config: Dict[str, Any]) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url(config),
            headers=self.auth_headers(config),
            auth=self.auth(config),
            timeout=self._timeout,
            transport=self._transport,
        )

    @abstractmethod
    def base_url(self, config: Dict[str, Any]) -> str:
        ...

    def auth_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def auth(self, config: Dict[str, Any]) -> Optional[httpx.Auth]:
        return None

    def request(self, client: httpx.Client, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue a request and normalize every failure into ConnectorConnectionError."""
        try:
            resp = client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ConnectorConnectionError(f"{self.name}: request timed out ({method} {url})") from e
        except httpx.HTTPError as e:
            raise ConnectorConnectionError(f"{self.name}: network error ({e.__class__.__name__}: {e})") from e

        if resp.status_code in (401, 403):
            raise ConnectorConnectionError(
                f"{self.name}: authentication rejected (HTTP {resp.status_code})", status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise ConnectorConnectionError(
                f"{self.name}: HTTP {resp.status_code} from {method} {url}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    def probe_path(self, config: Dict[str, Any]) -> str:
        return "/"

    def probe(self, config: Dict[str, Any]) -> ProbeResult:
        try:
            with self.client(config) as client:
                self.request(client, "GET", self.probe_path(config))
        except ConnectorConnectionError as e:
            return ProbeResult(ok=False, message=f"Connection failed: {e.message}")
        except (KeyError, ValueError) as e:
            return ProbeResult(ok=False, message=f"Connection failed: invalid configuration ({e})")
        return ProbeResult(ok=True, message=f"{self.name} connection successful")

    @staticmethod
    def json_body(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ConnectorConnectionError(f"Provider returned a non-JSON body: {resp.text[:200]}") from e

    @staticmethod
    def parse_json(raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError("webhook body must be a JSON object")
        return payload

    def max_pages(self) -> int:
        return settings.ADAPTER_MAX_PAGES

    def page_size(self) -> int:
        return settings.ADAPTER_PAGE_SIZE

    # ---- pull / push templates ----

    def iter_pages(self, client: httpx.Client, config: Dict[str, Any], entity_type: str) -> Iterator[List[Dict[str, Any]]]:
        """Yield one list of raw remote records per page."""
        raise NotImplementedError

    def external_id_of(self, entity_type: str, remote: Dict[str, Any], config: Dict[str, Any]) -> Any:
        return remote.get("id")

    def pull(self, config, entity_types, mapping) -> RecordBatch:
        batch = RecordBatch()
        with self.client(config) as client:
            for entity_type in entity_types:
                if entity_type not in self.pull_entities:
                    logger.info("%s does not support pulling %s, skipped", self.name, entity_type)
                    continue
                pages = 0
                for page in self.iter_pages(client, config, entity_type):
                    pages += 1
                    for remote in page:
                        batch.records.append(
                            self.to_canonical(entity_type, self.external_id_of(entity_type, remote, config), remote, mapping)
                        )
                    if pages >= self.max_pages():
                        logger.warning("%s: page limit %d reached while pulling %s", self.name, self.max_pages(), entity_type)
                        break
                batch.pages += pages
        return batch

    def push_one(
        self, client: httpx.Client, config: Dict[str, Any], record: LocalRecord, payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Create or update one remote record and return it as the provider echoed it."""
        raise NotImplementedError

    @staticmethod
    def aborts_push(error: ConnectorConnectionError) -> bool:
        """True when the provider itself is unusable, not just this record."""
        status = error.status_code
        return status is None or status >= 500 or status in (401, 403, 429)

    def push(self, config, records, mapping) -> List[PushResult]:
        """Push records one by one.

        A 4xx rejection is recorded against the record; timeouts, network
        errors, 5xx, throttling and rejected credentials abort the batch.
        """
        results: List[PushResult] = []
        with self.client(config) as client:
            for record in records:
                if record.entity_type not in self.push_entities:
                    results.append(PushResult(record.entity_type, record.local_id, ok=False,
                                              error=f"{self.name} does not accept {record.entity_type} records"))
                    continue
                outcome = self.to_remote(record, mapping)
                if not outcome.ok:
                    results.append(PushResult(record.entity_type, record.local_id, ok=False,
                                              error="; ".join(f"{e.field}: {e.message}" for e in outcome.errors)))
                    continue
                try:
                    remote = self.push_one(client, config, record, outcome.data)
                except ConnectorConnectionError as e:
                    if self.aborts_push(e):
                        raise
                    results.append(PushResult(record.entity_type, record.local_id, ok=False, error=e.message))
                    continue
                remote = remote if isinstance(remote, dict) else {}
                remote_id = self.external_id_of(record.entity_type, remote, config)
                results.append(PushResult(record.entity_type, record.local_id, ok=True,
                                          external_id=str(remote_id) if remote_id is not None else record.external_id,
                                          remote=remote))
        return results


def base64_hmac(secret: str, message: bytes) -> str:
    """Base64 HMAC-SHA256, the scheme Shopify, WooCommerce and Intuit use."""
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")
