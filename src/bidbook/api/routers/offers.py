"""
Offer API router.

Responding to, countering and withdrawing offers, and reading a
negotiation chain. Only the two parties of a chain may read it.
"""
from __future__ import annotations

from fastapi import APIRouter, Path

from ..dependencies import CurrentActor, DatabaseSession, Dispatcher
from ...core.errors import PermissionDeniedError
from ...core.schemas import CounterOfferRequest, OfferActionResult, OfferOut
from ...core.services import offers as offers_service


router = APIRouter(prefix="/offers", tags=["offers"])


@router.get("/{offer_id}/chain", response_model=list[OfferOut])
async def get_offer_chain(
    db: DatabaseSession,
    actor: CurrentActor,
    offer_id: str = Path(..., description="Identifier of any offer in the chain."),
) -> list[OfferOut]:
    chain = await offers_service.get_offer_chain(db, offer_id)
    if actor not in (chain[0].buyer_id, chain[0].seller_id):
        raise PermissionDeniedError("Not a party to this negotiation")
    return [OfferOut.model_validate(offer) for offer in chain]


@router.post("/{offer_id}/accept", response_model=OfferActionResult)
async def accept_offer(
    db: DatabaseSession,
    actor: CurrentActor,
    dispatcher: Dispatcher,
    offer_id: str = Path(..., description="Identifier of the offer."),
) -> OfferActionResult:
    return await offers_service.accept_offer(db, dispatcher, offer_id, actor)


@router.post("/{offer_id}/reject", response_model=OfferActionResult)
async def reject_offer(
    db: DatabaseSession,
    actor: CurrentActor,
    dispatcher: Dispatcher,
    offer_id: str = Path(..., description="Identifier of the offer."),
) -> OfferActionResult:
    return await offers_service.reject_offer(db, dispatcher, offer_id, actor)


@router.post("/{offer_id}/counter", response_model=OfferActionResult, status_code=201)
async def counter_offer(
    req: CounterOfferRequest,
    db: DatabaseSession,
    actor: CurrentActor,
    dispatcher: Dispatcher,
    offer_id: str = Path(..., description="Identifier of the offer."),
) -> OfferActionResult:
    """Counter a pending offer. The new node is returned as ``counter_offer``."""
    return await offers_service.counter_offer(db, dispatcher, offer_id, actor, req.amount, message=req.message)


@router.post("/{offer_id}/withdraw", response_model=OfferActionResult)
async def withdraw_offer(
    db: DatabaseSession,
    actor: CurrentActor,
    dispatcher: Dispatcher,
    offer_id: str = Path(..., description="Identifier of the offer."),
) -> OfferActionResult:
    return await offers_service.withdraw_offer(db, dispatcher, offer_id, actor)
