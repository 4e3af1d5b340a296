"""Task queue callback endpoints."""

import logging

from fastapi import APIRouter, Depends

from mindsieve.api.dependencies import get_app_context_dep
from mindsieve.api.routers.cards import to_card_request
from mindsieve.api.schemas import CardRequestBody, CardTaskResponse
from mindsieve.services.bootstrap import AppContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["Tasks"])


@router.post("/cards", response_model=CardTaskResponse)
async def run_card_task(
    body: CardRequestBody,
    context: AppContext = Depends(get_app_context_dep),
):
    """Generate a card for a queued request.

    Redelivered tasks are harmless: the card id is derived from content.
    """
    result = await context.card_generator.generate_card(to_card_request(body))
    logger.info(f"Card task done: {result.id} (cached={result.cached})")
    return CardTaskResponse(id=result.id, cached=result.cached, card=result.card)
