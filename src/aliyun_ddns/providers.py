"""Collaborators used by the reconciliation worker.

Two capability interfaces live here, each with one concrete implementation:

    - IpDiscoveryClient / HttpIpDiscoveryClient: plain GET against a public
      "what is my IP" endpoint, returning the body for the worker to scan.
    - DNSProvider / AliyunDNSProvider: describe/add/update A records through
      the Alibaba Cloud DNS RPC API.

Transport failures are turned into result objects rather than raised.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

RECORD_TYPE_A = "A"

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DomainRecord:
    """An existing record as reported by the DNS provider."""

    record_id: str
    value: str
    type: str = RECORD_TYPE_A


@dataclass(frozen=True)
class HttpResult:
    """Outcome of a single discovery GET."""

    ok: bool
    body: str = ""


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of an add/update call."""

    has_error: bool
    message: str = ""


@dataclass(frozen=True)
class DescribeResult:
    """Outcome of a describe call."""

    has_error: bool
    message: str = ""
    records: Tuple[DomainRecord, ...] = field(default_factory=tuple)


# =============================================================================
# IP Discovery
# =============================================================================


class IpDiscoveryClient(ABC):
    """Fetches a URL whose body contains the caller's public IPv4 address."""

    @abstractmethod
    def get(self, url: str) -> HttpResult:
        """Issue one GET; ok is False on any transport or status failure."""
        pass

    def close(self) -> None:
        """Release any held connections."""
        pass


class HttpIpDiscoveryClient(IpDiscoveryClient):
    def __init__(self, timeout_seconds: float = 10.0):
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def get(self, url: str) -> HttpResult:
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.debug(f"GET {url} failed: {e}")
            return HttpResult(ok=False)
        return HttpResult(ok=True, body=response.text or "")

    def close(self) -> None:
        self._session.close()


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def describe_records(
        self, domain_name: str, sub_domain_name: str, record_type: str = RECORD_TYPE_A
    ) -> DescribeResult:
        """List records named sub_domain_name under domain_name."""
        pass

    @abstractmethod
    def add_record(
        self, domain_name: str, rr: str, value: str, record_type: str = RECORD_TYPE_A
    ) -> ProviderResult:
        """Create a record rr.domain_name -> value."""
        pass

    @abstractmethod
    def update_record(
        self, record_id: str, rr: str, value: str, record_type: str = RECORD_TYPE_A
    ) -> ProviderResult:
        """Point the existing record record_id at value."""
        pass

    def close(self) -> None:
        """Release any held connections."""
        pass


def _percent_encode(value: Any) -> str:
    """RFC 3986 encoding as required by the Alibaba Cloud signature."""
    return quote(str(value), safe="~")


def sign_request(params: Dict[str, str], access_key_secret: str, method: str = "GET") -> str:
    """Compute the signature (version 1.0, HMAC-SHA1) for an RPC request."""
    canonical = "&".join(
        f"{_percent_encode(k)}={_percent_encode(params[k])}" for k in sorted(params)
    )
    string_to_sign = f"{method}&{_percent_encode('/')}&{_percent_encode(canonical)}"
    digest = hmac.new(
        f"{access_key_secret}&".encode("utf-8"),
        string_to_sign.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class AliyunDNSProvider(DNSProvider):
    """Alibaba Cloud DNS (alidns) provider implementation."""

    API_VERSION = "2015-01-09"
    PAGE_SIZE = 500

    def __init__(
        self,
        access_key_id: str,
        access_key_secret: str,
        endpoint: str = "https://alidns.aliyuncs.com/",
        timeout_seconds: float = 10.0,
    ):
        self._access_key_id = access_key_id
        self._access_key_secret = access_key_secret
        self._endpoint = endpoint
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "Aliyun DNS"

    def close(self) -> None:
        self._session.close()

    def _signed_params(self, action: str, params: Dict[str, Any]) -> Dict[str, str]:
        merged: Dict[str, str] = {
            "Format": "JSON",
            "Version": self.API_VERSION,
            "AccessKeyId": self._access_key_id,
            "SignatureMethod": "HMAC-SHA1",
            "SignatureVersion": "1.0",
            "SignatureNonce": uuid.uuid4().hex,
            "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "Action": action,
        }
        merged.update({k: str(v) for k, v in params.items()})
        merged["Signature"] = sign_request(merged, self._access_key_secret)
        return merged

    def _call(self, action: str, params: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        """Invoke an RPC action. Returns (payload, error message)."""
        try:
            response = self._session.get(
                self._endpoint, params=self._signed_params(action, params), timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            return {}, f"{action} request failed: {e}"

        try:
            payload = response.json()
        except ValueError:
            return {}, f"{action} returned non-JSON response (HTTP {response.status_code})"

        if not isinstance(payload, dict):
            return {}, f"{action} returned unexpected payload: {payload!r}"
        if not response.ok or payload.get("Code"):
            code = payload.get("Code") or f"HTTP {response.status_code}"
            message = payload.get("Message") or response.reason or ""
            return payload, f"{code}: {message}"
        return payload, ""

    def describe_records(
        self, domain_name: str, sub_domain_name: str, record_type: str = RECORD_TYPE_A
    ) -> DescribeResult:
        payload, error = self._call(
            "DescribeDomainRecords",
            {
                "DomainName": domain_name,
                "RRKeyWord": sub_domain_name,
                "TypeKeyWord": record_type,
                "PageSize": self.PAGE_SIZE,
            },
        )
        if error:
            return DescribeResult(has_error=True, message=error)

        raw_records = (payload.get("DomainRecords") or {}).get("Record") or []
        records: List[DomainRecord] = []
        for r in raw_records:
            if not isinstance(r, dict):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            record_id = r.get("RecordId")
            value = r.get("Value")
            if not record_id or not isinstance(value, str):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            # RRKeyWord is a fuzzy match, keep exact hits only
            if r.get("RR") != sub_domain_name or r.get("Type", record_type) != record_type:
                continue
            records.append(DomainRecord(record_id=str(record_id), value=value, type=record_type))
        return DescribeResult(has_error=False, records=tuple(records))

    def add_record(
        self, domain_name: str, rr: str, value: str, record_type: str = RECORD_TYPE_A
    ) -> ProviderResult:
        _, error = self._call(
            "AddDomainRecord",
            {"DomainName": domain_name, "RR": rr, "Type": record_type, "Value": value},
        )
        return ProviderResult(has_error=bool(error), message=error)

    def update_record(
        self, record_id: str, rr: str, value: str, record_type: str = RECORD_TYPE_A
    ) -> ProviderResult:
        _, error = self._call(
            "UpdateDomainRecord",
            {"RecordId": record_id, "RR": rr, "Type": record_type, "Value": value},
        )
        return ProviderResult(has_error=bool(error), message=error)

