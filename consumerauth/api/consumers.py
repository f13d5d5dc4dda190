"""Consumer management routes: propose, view, history and lifecycle actions."""

import logging

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth.core.actor import Actor
from consumerauth.core.auth import get_current_actor
from consumerauth.database import get_db
from consumerauth.models.consumer import Consumer
from consumerauth.schemas.consumer import (
    CONSUMER_KEY_PATTERN,
    AccessTokenResponse,
    ActionResponse,
    ConsumerActionRequest,
    ConsumerResponse,
    LogEntryResponse,
    ProposeRequest,
)
from consumerauth.services import consumer_registry
from consumerauth.services.lifecycle_service import (
    TRANSITIONS,
    ActionResult,
    ConsumerLifecycleController,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/consumers", tags=["consumers"])


def get_controller(db: AsyncSession = Depends(get_db)) -> ConsumerLifecycleController:
    return ConsumerLifecycleController(db)


def _consumer_response(consumer: Consumer) -> ConsumerResponse:
    return ConsumerResponse(
        **consumer.to_dict(),
        change_token=consumer_registry.change_token_for(consumer),
    )


def _action_response(result: ActionResult, actor: Actor, *, reveal_secret: bool) -> ActionResponse:
    consumer = result.consumer
    token = result.access_token
    return ActionResponse(
        consumer=_consumer_response(consumer),
        changed=result.changed,
        secret_key=consumer.secret_key if reveal_secret and consumer.user_id == actor.id else None,
        access_token=AccessTokenResponse(key=token.key, secret=token.secret) if token else None,
    )


@router.post("", response_model=ActionResponse, status_code=201)
async def propose_consumer(
    req: ProposeRequest,
    actor: Actor = Depends(get_current_actor),
    controller: ConsumerLifecycleController = Depends(get_controller),
):
    fields = req.model_dump(exclude={"agreement"})
    result = await controller.propose(actor, **fields)
    return _action_response(result, actor, reveal_secret=True)


@router.get("/{consumer_key}", response_model=ConsumerResponse)
async def get_consumer(
    consumer_key: str = Path(..., pattern=CONSUMER_KEY_PATTERN),
    actor: Actor = Depends(get_current_actor),
    controller: ConsumerLifecycleController = Depends(get_controller),
):
    consumer = await controller.view(actor, consumer_key)
    return _consumer_response(consumer)


@router.get("/{consumer_key}/log", response_model=list[LogEntryResponse])
async def get_consumer_log(
    consumer_key: str = Path(..., pattern=CONSUMER_KEY_PATTERN),
    actor: Actor = Depends(get_current_actor),
    controller: ConsumerLifecycleController = Depends(get_controller),
):
    entries = await controller.history(actor, consumer_key)
    return [
        LogEntryResponse(
            action=e.action,
            performer_id=e.performer_id,
            performer_name=e.performer_name or "",
            comment=e.comment or "",
            created_at=e.created_at,
            entry_hash=e.entry_hash,
        )
        for e in entries
    ]


@router.post("/{consumer_key}/{action}", response_model=ActionResponse)
async def consumer_action(
    req: ConsumerActionRequest,
    consumer_key: str = Path(..., pattern=CONSUMER_KEY_PATTERN),
    action: str = Path(..., pattern="^(" + "|".join(TRANSITIONS) + ")$"),
    actor: Actor = Depends(get_current_actor),
    controller: ConsumerLifecycleController = Depends(get_controller),
):
    result = await controller.transition(
        action,
        actor,
        consumer_key,
        change_token=req.change_token,
        reason=req.reason,
        suppress=req.suppress,
        rsa_key=req.rsa_key,
        restrictions=req.restrictions,
        reset_secret=req.reset_secret,
    )
    return _action_response(result, actor, reveal_secret=req.reset_secret)
