"""
External collaborators consumed by the engine

Token validation, outbound HTTP, notifications and the low-code CRUD runtime sit
behind small abstract interfaces so that dry runs and tests can substitute
recorders.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List, Callable
import copy
import logging

import httpx
import jwt

from ..exceptions import Forbidden, StepTimeoutError, Unauthorized, UpstreamError
from ..models import new_id, utcnow, to_iso


logger = logging.getLogger(__name__)

BODY_EXCERPT_CHARS = 500


# --- token validation -------------------------------------------------------

@dataclass
class Principal:
    """Identity returned by a TokenValidator"""
    user_id: str
    permissions: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "permissions": self.permissions, "roles": self.roles}


class TokenValidator(ABC):

    @abstractmethod
    async def validate(self, token: str, required_permission: Optional[str] = None,
                       resource_path: Optional[str] = None) -> Principal:
        """Raise Unauthorized for a bad token and Forbidden for a missing permission"""
        pass


class JWTTokenValidator(TokenValidator):
    """Decodes bearer JWTs signed with a shared secret"""

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    async def validate(self, token: str, required_permission: Optional[str] = None,
                       resource_path: Optional[str] = None) -> Principal:
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token has expired")
        except jwt.InvalidTokenError:
            raise Unauthorized("Invalid token")

        user_id = payload.get("sub")
        if not user_id:
            raise Unauthorized("Token has no subject")

        permissions = list(payload.get("permissions") or [])
        roles = list(payload.get("roles") or ([payload["role"]] if payload.get("role") else []))
        if required_permission and required_permission not in permissions and "admin" not in roles:
            raise Forbidden(f"Missing permission '{required_permission}'",
                            resource=resource_path)
        return Principal(user_id=str(user_id), permissions=permissions, roles=roles)


# --- outbound HTTP ----------------------------------------------------------

@dataclass
class HttpResponse:
    status_code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


class HttpClient(ABC):

    @abstractmethod
    async def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                      body: Any = None, timeout_ms: int = 30000) -> HttpResponse:
        """Raise UpstreamError for transport failures and 4xx/5xx answers"""
        pass

    async def close(self):
        pass


def body_excerpt(body: Any) -> str:
    text = body if isinstance(body, str) else repr(body)
    return text[:BODY_EXCERPT_CHARS]


class HttpxClient(HttpClient):
    """HttpClient backed by a shared httpx.AsyncClient"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                      body: Any = None, timeout_ms: int = 30000) -> HttpResponse:
        method = (method or "GET").upper()
        kwargs: Dict[str, Any] = {"headers": headers or {}, "timeout": timeout_ms / 1000.0}
        if method not in ("GET", "HEAD", "DELETE") and body not in (None, {}, ""):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise StepTimeoutError(f"{method} {url} timed out after {timeout_ms} ms")
        except httpx.HTTPError as e:
            raise UpstreamError(f"{method} {url} failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if response.status_code >= 400:
            raise UpstreamError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                body_excerpt=body_excerpt(data),
            )
        return HttpResponse(response.status_code, data, dict(response.headers))

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# --- notifications ----------------------------------------------------------

class Notifier(ABC):

    @abstractmethod
    async def send(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver ``{type, recipients, subject, message, data, metadata}``; returns ``{id, status}``"""
        pass


class HttpNotifier(Notifier):
    """Posts notifications to a notification service"""

    def __init__(self, base_url: str, http: Optional[HttpClient] = None,
                 token: Optional[str] = None, timeout_ms: int = 10000):
        self.base_url = base_url.rstrip("/")
        self.http = http or HttpxClient()
        self.token = token
        self.timeout_ms = timeout_ms

    async def send(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        response = await self.http.request(
            "POST", f"{self.base_url}/api/notifications/send",
            headers=headers, body=notification, timeout_ms=self.timeout_ms,
        )
        body = response.body if isinstance(response.body, dict) else {}
        return {
            "id": body.get("id") or body.get("notificationId"),
            "status": body.get("status", "sent"),
        }


# --- low-code CRUD ----------------------------------------------------------

@dataclass
class CrudResult:
    success: bool
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "data": self.data, "error": self.error}


class LowCodeCRUD(ABC):
    """Narrow interface onto the low-code record runtime"""

    @abstractmethod
    async def create(self, entity_id: str, data: Dict[str, Any], ctx: Dict[str, Any]) -> CrudResult:
        pass

    @abstractmethod
    async def read(self, entity_id: str, record_id: str, ctx: Dict[str, Any]) -> CrudResult:
        pass

    @abstractmethod
    async def update(self, entity_id: str, record_id: str, data: Dict[str, Any],
                     ctx: Dict[str, Any]) -> CrudResult:
        pass

    @abstractmethod
    async def delete(self, entity_id: str, record_id: str, ctx: Dict[str, Any]) -> CrudResult:
        pass

    @abstractmethod
    async def query(self, entity_id: str, query: Dict[str, Any], ctx: Dict[str, Any]) -> CrudResult:
        pass

    @abstractmethod
    async def formula(self, entity_id: str, record_id: str, formula_name: str,
                      ctx: Dict[str, Any]) -> CrudResult:
        pass


class InMemoryLowCodeCRUD(LowCodeCRUD):
    """Dictionary-backed CRUD runtime used by tests and ``engine test``"""

    def __init__(self):
        self.entities: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.formulas: Dict[str, Callable[[Dict[str, Any]], Any]] = {}

    def register_formula(self, entity_id: str, name: str, fn: Callable[[Dict[str, Any]], Any]):
        self.formulas[f"{entity_id}.{name}"] = fn

    def _records(self, entity_id: str) -> Dict[str, Dict[str, Any]]:
        return self.entities.setdefault(entity_id, {})

    async def create(self, entity_id: str, data: Dict[str, Any], ctx: Dict[str, Any]) -> CrudResult:
        record = copy.deepcopy(data)
        record.setdefault("id", new_id())
        record["created_by"] = ctx.get("userId")
        record["created_at"] = to_iso(utcnow())
        self._records(entity_id)[str(record["id"])] = record
        return CrudResult(True, copy.deepcopy(record))

    async def read(self, entity_id: str, record_id: str, ctx: Dict[str, Any]) -> CrudResult:
        record = self._records(entity_id).get(str(record_id))
        if record is None:
            return CrudResult(False, error=f"Record {record_id} not found in {entity_id}")
        return CrudResult(True, copy.deepcopy(record))

    async def update(self, entity_id: str, record_id: str, data: Dict[str, Any],
                     ctx: Dict[str, Any]) -> CrudResult:
        record = self._records(entity_id).get(str(record_id))
        if record is None:
            return CrudResult(False, error=f"Record {record_id} not found in {entity_id}")
        record.update(copy.deepcopy(data))
        record["updated_at"] = to_iso(utcnow())
        return CrudResult(True, copy.deepcopy(record))

    async def delete(self, entity_id: str, record_id: str, ctx: Dict[str, Any]) -> CrudResult:
        records = self._records(entity_id)
        if str(record_id) not in records:
            return CrudResult(False, error=f"Record {record_id} not found in {entity_id}")
        if ctx.get("softDelete", True):
            records[str(record_id)]["deleted_at"] = to_iso(utcnow())
        else:
            del records[str(record_id)]
        return CrudResult(True, {"id": record_id, "deleted": True})

    async def query(self, entity_id: str, query: Dict[str, Any], ctx: Dict[str, Any]) -> CrudResult:
        where = query.get("where") or {}
        rows = [
            r for r in self._records(entity_id).values()
            if not r.get("deleted_at") and all(r.get(k) == v for k, v in where.items())
        ]
        order_by = query.get("orderBy")
        if order_by:
            descending = order_by.startswith("-")
            key = order_by.lstrip("-")
            rows.sort(key=lambda r: (r.get(key) is None, r.get(key)), reverse=descending)
        offset = int(query.get("offset", 0))
        limit = query.get("limit")
        rows = rows[offset:offset + int(limit)] if limit is not None else rows[offset:]
        return CrudResult(True, copy.deepcopy(rows))

    async def formula(self, entity_id: str, record_id: str, formula_name: str,
                      ctx: Dict[str, Any]) -> CrudResult:
        fn = self.formulas.get(f"{entity_id}.{formula_name}")
        if fn is None:
            return CrudResult(False, error=f"Unknown formula {formula_name} on {entity_id}")
        record = self._records(entity_id).get(str(record_id))
        if record is None:
            return CrudResult(False, error=f"Record {record_id} not found in {entity_id}")
        return CrudResult(True, fn(copy.deepcopy(record)))


# --- dry-run recorders ------------------------------------------------------

class ChangeRecorder:
    """Collects the side effects a dry run would have performed"""

    def __init__(self):
        self.would_change: List[Dict[str, Any]] = []

    def record(self, kind: str, **detail: Any) -> Dict[str, Any]:
        entry = {"kind": kind, "at": to_iso(utcnow()), **copy.deepcopy(detail)}
        self.would_change.append(entry)
        return entry


class RecordingHttpClient(HttpClient):
    """Answers every request with a stub and records it"""

    def __init__(self, recorder: ChangeRecorder):
        self.recorder = recorder

    async def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                      body: Any = None, timeout_ms: int = 30000) -> HttpResponse:
        self.recorder.record("apiCall", method=(method or "GET").upper(), url=url, body=body)
        return HttpResponse(200, {"dryRun": True})


class RecordingNotifier(Notifier):

    def __init__(self, recorder: ChangeRecorder):
        self.recorder = recorder

    async def send(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        self.recorder.record(
            "notification",
            type=notification.get("type"),
            recipients=notification.get("recipients"),
            subject=notification.get("subject"),
        )
        return {"id": f"dry_{new_id()}", "status": "dry_run"}


class RecordingCRUD(LowCodeCRUD):
    """Reads pass through to ``inner``; writes are recorded only"""

    def __init__(self, recorder: ChangeRecorder, inner: Optional[LowCodeCRUD] = None):
        self.recorder = recorder
        self.inner = inner

    async def create(self, entity_id: str, data: Dict[str, Any], ctx: Dict[str, Any]) -> CrudResult:
        self.recorder.record("crud.create", entityId=entity_id, data=data)
        return CrudResult(True, {**data, "id": data.get("id") or f"dry_{new_id()}"})

    async def read(self, entity_id: str, record_id: str, ctx: Dict[str, Any]) -> CrudResult:
        if self.inner is None:
            return CrudResult(True, {"id": record_id})
        return await self.inner.read(entity_id, record_id, ctx)

    async def update(self, entity_id: str, record_id: str, data: Dict[str, Any],
                     ctx: Dict[str, Any]) -> CrudResult:
        self.recorder.record("crud.update", entityId=entity_id, recordId=record_id, data=data)
        return CrudResult(True, {**data, "id": record_id})

    async def delete(self, entity_id: str, record_id: str, ctx: Dict[str, Any]) -> CrudResult:
        self.recorder.record("crud.delete", entityId=entity_id, recordId=record_id)
        return CrudResult(True, {"id": record_id, "deleted": True})

    async def query(self, entity_id: str, query: Dict[str, Any], ctx: Dict[str, Any]) -> CrudResult:
        if self.inner is None:
            return CrudResult(True, [])
        return await self.inner.query(entity_id, query, ctx)

    async def formula(self, entity_id: str, record_id: str, formula_name: str,
                      ctx: Dict[str, Any]) -> CrudResult:
        if self.inner is None:
            return CrudResult(True, None)
        return await self.inner.formula(entity_id, record_id, formula_name, ctx)
