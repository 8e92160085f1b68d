# Overview: HTTP client for the authoritative remote API; normalizes envelopes and errors at the boundary.

"""
Remote API client.

Endpoints per entity (spec.endpoint):
    POST   /{entity}        single or batch create (idempotency key)
    PUT    /{entity}/{id}   update
    DELETE /{entity}/{id}   delete (404 = already absent)
    GET    /{entity}        full list (refresh)

Accepted response shapes are normalized here once:
    {"data": <record|list>}, {"<recordKey>": <record>}, {"<plural>": [...]}, bare record/list

Everything past this module sees CreateEnvelope / UpdateEnvelope / DeleteEnvelope /
ListEnvelope with string server ids, or one of the RemoteApiError subclasses.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ..entities import EntitySpec

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class RemoteApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteApiError):
    """Network failure, timeout or 5xx. Retried."""


class RemoteConflictError(RemoteApiError):
    """409 or a server-reported duplicate. Terminal success for adds."""


class RemoteNotFoundError(RemoteApiError):
    """404."""


class RemoteValidationError(RemoteApiError):
    """Any other 4xx. Retried up to the cap, then abandoned."""


class RemoteProtocolError(RemoteApiError):
    """The response did not match any accepted envelope shape."""


@dataclass(frozen=True)
class CreateEnvelope:
    records: list[dict]
    status_code: int = 201

    @property
    def first(self) -> dict:
        return self.records[0]


@dataclass(frozen=True)
class UpdateEnvelope:
    record: Optional[dict]
    status_code: int = 200


@dataclass(frozen=True)
class DeleteEnvelope:
    server_id: str
    already_absent: bool = False
    status_code: int = 200


@dataclass(frozen=True)
class ListEnvelope:
    records: list[dict] = field(default_factory=list)
    status_code: int = 200


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
    text = (response.text or "").strip()
    return text[:200] or f"HTTP {response.status_code}"


def raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    message = _error_message(response)
    if status == 409 or (400 <= status < 500 and "duplicate" in message.lower()):
        raise RemoteConflictError(message, status)
    if status == 404:
        raise RemoteNotFoundError(message, status)
    if status >= 500 or status in (408, 429):
        raise TransientRemoteError(message, status)
    raise RemoteValidationError(message, status)


def _unwrap(body: Any, spec: EntitySpec, depth: int = 0) -> Any:
    if not isinstance(body, dict) or "id" in body or depth > 2:
        return body
    for key in ("data", spec.record_key, spec.plural, spec.name):
        if key and body.get(key) is not None:
            return _unwrap(body[key], spec, depth + 1)
    return body


def _normalize_record(record: Any) -> dict:
    if not isinstance(record, dict):
        raise RemoteProtocolError(f"Expected a record object, got {type(record).__name__}")
    if record.get("id") is None:
        raise RemoteProtocolError("Record without id in server response")
    normalized = dict(record)
    normalized["id"] = str(record["id"])
    return normalized


def normalize_records(body: Any, spec: EntitySpec, *, allow_single: bool = True) -> list[dict]:
    value = _unwrap(body, spec)
    if isinstance(value, dict) and allow_single:
        return [_normalize_record(value)]
    if isinstance(value, list):
        return [_normalize_record(item) for item in value]
    raise RemoteProtocolError(f"Unexpected {spec.name} response shape: {type(value).__name__}")


class RemoteApi:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        token: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.BaseTransport] = None) -> "RemoteApi":
        return cls(
            config.get("REMOTE_API_BASE_URL", "http://127.0.0.1:3000/api"),
            timeout=float(config.get("REMOTE_API_TIMEOUT_SECONDS", 30)),
            token=config.get("REMOTE_API_TOKEN"),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RemoteApi":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"Timeout calling {method} {path}: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientRemoteError(f"Network error calling {method} {path}: {exc}") from exc
        raise_for_status(response)
        return response

    @staticmethod
    def _json(response: httpx.Response):
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteProtocolError("Response body is not JSON", response.status_code) from exc

    # ---------------------------------------------------------------- operations

    def create(self, spec: EntitySpec, body: dict, idempotency_key: str) -> CreateEnvelope:
        payload = {**body, "idempotencyKey": idempotency_key}
        response = self._request(
            "POST", spec.endpoint, json=payload, headers={IDEMPOTENCY_HEADER: idempotency_key}
        )
        records = normalize_records(self._json(response), spec)
        if not records:
            raise RemoteProtocolError(f"Empty {spec.name} create response", response.status_code)
        return CreateEnvelope(records=records, status_code=response.status_code)

    def create_many(
        self,
        spec: EntitySpec,
        items: list[dict],
        shared: dict,
        idempotency_key: str,
    ) -> CreateEnvelope:
        """
        Batch create. The server may accept only a prefix of `items`; the envelope holds
        exactly what it returned, in submission order.
        """
        payload = {spec.batch_field: list(items), **shared, "idempotencyKey": idempotency_key}
        response = self._request(
            "POST", spec.endpoint, json=payload, headers={IDEMPOTENCY_HEADER: idempotency_key}
        )
        body = self._json(response)
        records = [] if body is None else normalize_records(body, spec)
        return CreateEnvelope(records=records, status_code=response.status_code)

    def update(self, spec: EntitySpec, server_id: str, body: dict) -> UpdateEnvelope:
        response = self._request("PUT", f"{spec.endpoint}/{server_id}", json=body)
        data = self._json(response)
        if data is None:
            return UpdateEnvelope(record=None, status_code=response.status_code)
        records = normalize_records(data, spec)
        return UpdateEnvelope(record=records[0] if records else None, status_code=response.status_code)

    def delete(self, spec: EntitySpec, server_id: str, body: Optional[dict] = None) -> DeleteEnvelope:
        try:
            response = self._request("DELETE", f"{spec.endpoint}/{server_id}", json=body or None)
        except RemoteNotFoundError:
            logger.info("%s %s already absent on server", spec.name, server_id)
            return DeleteEnvelope(server_id=str(server_id), already_absent=True, status_code=404)
        return DeleteEnvelope(server_id=str(server_id), status_code=response.status_code)

    def list(self, spec: EntitySpec) -> ListEnvelope:
        response = self._request("GET", spec.endpoint)
        data = self._json(response)
        if data is None:
            return ListEnvelope(records=[], status_code=response.status_code)
        return ListEnvelope(
            records=normalize_records(data, spec, allow_single=False),
            status_code=response.status_code,
        )
