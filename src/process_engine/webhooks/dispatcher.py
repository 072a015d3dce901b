"""
Inbound webhook dispatcher

Checks run in a fixed order: configuration, enabled state, IP allow-list,
origin, HMAC signature over the raw body, rate limit, required headers and
payload. A request that passes all of them starts an execution.
"""
import hashlib
import hmac
import ipaddress
import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..evaluator import get_path, set_path
from ..exceptions import (
    BadPayload, BadSignature, EngineError, Forbidden, NotFound, RateLimited, WebhookDisabled,
)
from ..models import AuditEventKind, TriggerKind, WebhookConfig
from ..monitoring.audit import AuditSink
from ..monitoring.metrics import MetricsRecorder
from ..storage.repository import StateStore


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"
WEBHOOK_INITIATOR = "webhook"
DEFAULT_RATE_LIMIT_MAX = 60
DEFAULT_RATE_LIMIT_WINDOW_MS = 60000


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body``"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FixedWindowRateLimiter:
    """Counts hits per key inside fixed windows"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        # key -> (window start, hits)
        self.windows: Dict[Tuple[str, ...], Tuple[float, int]] = {}

    def hit(self, key: Tuple[str, ...], limit: int, window_ms: int) -> Tuple[bool, float]:
        """Record a hit; returns (allowed, seconds until the window resets)"""
        now = self.clock()
        window = window_ms / 1000.0
        started, hits = self.windows.get(key, (now, 0))
        if now - started >= window:
            started, hits = now, 0
        hits += 1
        self.windows[key] = (started, hits)
        if len(self.windows) > 10000:
            self._prune(now, window)
        return hits <= limit, max(0.0, started + window - now)

    def _prune(self, now: float, window: float):
        for key in [k for k, (started, _) in self.windows.items() if now - started >= window]:
            del self.windows[key]


class WebhookDispatcher:
    """Verifies inbound webhook calls and starts executions for them"""

    def __init__(self, store: StateStore, engine: Any,
                 rate_limit_max: int = DEFAULT_RATE_LIMIT_MAX,
                 rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
                 metrics: Optional[MetricsRecorder] = None,
                 limiter: Optional[FixedWindowRateLimiter] = None):
        self.store = store
        self.engine = engine
        self.rate_limit_max = rate_limit_max
        self.rate_limit_window_ms = rate_limit_window_ms
        self.metrics = metrics or MetricsRecorder()
        self.limiter = limiter or FixedWindowRateLimiter()
        self.audit = AuditSink(store.audit)

    # -- configuration ----------------------------------------------------------

    async def configure(self, workflow_id: str, user_id: Optional[str] = None,
                        **options: Any) -> WebhookConfig:
        """Create or replace the webhook for a workflow; a secret is generated when none is given"""
        await self.engine.get_workflow(workflow_id)
        config = WebhookConfig(workflow_id=workflow_id, **options)
        if config.require_signature and not config.secret:
            config.secret = secrets.token_hex(32)
        config = await self.store.webhooks.save(config)
        await self.audit.record(
            AuditEventKind.CONFIG_CHANGE, actor=user_id, workflow_id=workflow_id,
            action="webhook.configure",
        )
        logger.info(f"Webhook configured for workflow {workflow_id}")
        return config

    async def get_config(self, workflow_id: str) -> WebhookConfig:
        config = await self.store.webhooks.get(workflow_id)
        if config is None:
            raise NotFound(f"No webhook configured for workflow {workflow_id}")
        return config

    async def rotate_secret(self, workflow_id: str, user_id: Optional[str] = None) -> WebhookConfig:
        config = await self.get_config(workflow_id)
        config.secret = secrets.token_hex(32)
        config = await self.store.webhooks.save(config)
        await self.audit.record(
            AuditEventKind.CONFIG_CHANGE, actor=user_id, workflow_id=workflow_id,
            action="webhook.rotate_secret",
        )
        return config

    async def delete_config(self, workflow_id: str, user_id: Optional[str] = None) -> bool:
        deleted = await self.store.webhooks.delete(workflow_id)
        if deleted:
            await self.audit.record(
                AuditEventKind.CONFIG_CHANGE, actor=user_id, workflow_id=workflow_id,
                action="webhook.delete",
            )
        return deleted

    # -- receipt -----------------------------------------------------------------

    async def receive(self, workflow_id: str, body: bytes, headers: Mapping[str, str],
                      client_ip: Optional[str] = None) -> Dict[str, Any]:
        """Handle one delivery; returns ``{"executionId": ...}`` or raises an EngineError"""
        try:
            result = await self._receive(workflow_id, body, {k.lower(): v for k, v in headers.items()},
                                         client_ip)
        except EngineError as e:
            self.metrics.inc("webhook_receipts_total", {"outcome": e.kind})
            logger.warning(f"Webhook for workflow {workflow_id} from {client_ip} refused: {e.message}",
                           extra={"errorKind": e.kind})
            raise
        self.metrics.inc("webhook_receipts_total", {"outcome": "accepted"})
        return result

    async def _receive(self, workflow_id: str, body: bytes, headers: Dict[str, str],
                       client_ip: Optional[str]) -> Dict[str, Any]:
        config = await self.store.webhooks.get(workflow_id)
        if config is None:
            raise NotFound(f"No webhook configured for workflow {workflow_id}")

        workflow = await self.store.workflows.get(workflow_id)
        if not config.enabled or workflow is None or not workflow.is_active:
            raise WebhookDisabled(f"Webhook for workflow {workflow_id} is disabled")

        if config.allowed_ips and not ip_allowed(client_ip, config.allowed_ips):
            raise Forbidden(f"Address {client_ip} is not allowed")

        origin = headers.get("origin")
        if origin and config.allowed_origins and origin not in config.allowed_origins:
            raise Forbidden(f"Origin {origin} is not allowed")

        if config.require_signature:
            self._verify_signature(config, body, headers.get(SIGNATURE_HEADER))

        limit = config.rate_limit_max or self.rate_limit_max
        window_ms = config.rate_limit_window_ms or self.rate_limit_window_ms
        allowed, retry_after = self.limiter.hit((client_ip or "unknown", workflow_id), limit, window_ms)
        if not allowed:
            raise RateLimited(f"Rate limit of {limit} per {window_ms}ms exceeded",
                              retry_after=retry_after)

        missing = [h for h in config.required_headers if h.lower() not in headers]
        if missing:
            raise BadPayload(f"Missing required headers: {', '.join(missing)}")

        payload = parse_payload(body)
        input_data = map_input(payload, config.input_mapping)

        execution = await self.engine.start_execution(
            workflow_id,
            input_data,
            initiator=WEBHOOK_INITIATOR,
            trigger_kind=TriggerKind.WEBHOOK,
            trigger_data={"sourceIp": client_ip, "headers": _safe_headers(headers)},
        )
        logger.info(f"Webhook started execution {execution.id} for workflow {workflow_id}",
                    extra={"executionId": execution.id})
        return {"executionId": execution.id}

    @staticmethod
    def _verify_signature(config: WebhookConfig, body: bytes, provided: Optional[str]):
        if not config.secret or not provided:
            raise BadSignature("Missing webhook signature")
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        expected = sign(config.secret, body).encode("utf-8")
        if not hmac.compare_digest(expected, provided.strip().lower().encode("utf-8")):
            raise BadSignature("Invalid webhook signature")


def resolve_client_ip(peer: Optional[str], forwarded_for: Optional[str],
                      trusted_proxies: List[str]) -> Optional[str]:
    """
    Address of the caller

    ``X-Forwarded-For`` only counts when the direct peer is a trusted proxy.
    Hops are read right to left and the first untrusted one is the client.
    """
    if not forwarded_for or not trusted_proxies or not ip_allowed(peer, trusted_proxies):
        return peer
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not ip_allowed(hop, trusted_proxies):
            return hop
    return hops[0] if hops else peer


def ip_allowed(client_ip: Optional[str], allowed: List[str]) -> bool:
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning(f"Ignoring invalid allow-list entry {entry!r}")
    return False


def parse_payload(body: bytes) -> Any:
    if not body:
        return {}
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise BadPayload(f"Body is not valid JSON: {e}")


def map_input(payload: Any, mapping: Dict[str, str]) -> Dict[str, Any]:
    """Apply ``payload path -> input variable`` mapping; without one a JSON object passes through"""
    if not mapping:
        if isinstance(payload, dict):
            return payload
        return {"payload": payload}
    input_data: Dict[str, Any] = {}
    for source, target in mapping.items():
        value = payload if source in ("$", "$payload") else get_path(payload, source)
        if value is not None:
            set_path(input_data, target, value)
    return input_data


def _safe_headers(headers: Dict[str, str]) -> Dict[str, str]:
    hidden = {SIGNATURE_HEADER, "authorization", "cookie"}
    return {k: v for k, v in headers.items() if k not in hidden}
