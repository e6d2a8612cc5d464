"""
OAuth connections: callback code exchange, listing and disconnect.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .container import Container
from .models import OAuthProvider
from .routes_auth import CurrentUser, get_container, require_user
from .schemas import ConnectionRead, OAuthCallbackRequest, OAuthCallbackResponse
from .services.oauth_tokens import IdentityInfo, OAuthExchangeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


@router.get("/connections", response_model=list[ConnectionRead])
async def list_connections(
    provider: Optional[OAuthProvider] = Query(None),
    user: CurrentUser = Depends(require_user),
    container: Container = Depends(get_container),
):
    providers = [provider] if provider else list(OAuthProvider)
    connections = []
    for item in providers:
        connections.extend(await container.token_manager.list_connections(user.id, item))
    return connections


@router.delete("/connections/{connection_id}")
async def disconnect(
    connection_id: int,
    provider: Optional[OAuthProvider] = Query(None),
    user: CurrentUser = Depends(require_user),
    container: Container = Depends(get_container),
):
    deleted = 0
    for item in [provider] if provider else list(OAuthProvider):
        deleted += await container.token_manager.delete_credential(user.id, item, connection_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Connection not found")
    logger.info("[integrations] user=%s disconnected connection %s", user.id, connection_id)
    return {"status": "disconnected", "id": connection_id}


@router.post("/{provider}/callback", response_model=OAuthCallbackResponse)
async def oauth_callback(
    provider: OAuthProvider,
    payload: OAuthCallbackRequest,
    user: CurrentUser = Depends(require_user),
    container: Container = Depends(get_container),
):
    """Exchange the authorization code and store the encrypted grant."""
    try:
        grant = await container.token_manager.exchange_code(provider, payload.code)
    except OAuthExchangeError as exc:
        logger.warning("[integrations] %s code exchange failed for user=%s: %s", provider.value, user.id, exc)
        raise HTTPException(status_code=400, detail=str(exc))

    identity = None
    if payload.identity:
        identity = IdentityInfo(
            identity=payload.identity,
            identity_name=payload.identity_name,
            linked_account_id=payload.linked_account_id,
        )
    connection_id = await container.token_manager.save(user.id, provider, grant, identity)
    return OAuthCallbackResponse(connection_id=connection_id, provider=provider, scope=grant.scope)
