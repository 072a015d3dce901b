"""
Inbound webhook endpoint
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status

from ...runtime import EngineRuntime
from ...webhooks import resolve_client_ip
from ..dependencies import get_runtime


logger = logging.getLogger(__name__)
router = APIRouter()


def client_address(request: Request, trusted_proxies: List[str]) -> Optional[str]:
    peer = request.client.host if request.client else None
    return resolve_client_ip(peer, request.headers.get("X-Forwarded-For"), trusted_proxies)


@router.post("/{workflow_id}", status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    workflow_id: str,
    request: Request,
    runtime: EngineRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Start an execution from a signed webhook delivery"""
    # the signature covers the exact bytes received
    body = await request.body()
    client_ip = client_address(request, runtime.settings.trusted_proxies)
    return await runtime.dispatcher.receive(workflow_id, body, request.headers, client_ip)
