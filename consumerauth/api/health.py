import logging

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from consumerauth import __version__
from consumerauth.database import get_db
from consumerauth.models.consumer import Consumer, ConsumerAcceptance

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    consumers = (await db.execute(select(func.count(Consumer.id)))).scalar() or 0
    acceptances = (await db.execute(select(func.count(ConsumerAcceptance.id)))).scalar() or 0

    return {
        "status": "healthy",
        "version": __version__,
        "consumers_count": consumers,
        "acceptances_count": acceptances,
    }
