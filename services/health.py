from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.settings import settings

router = APIRouter()


@router.get("")
async def health(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"ok": True, "embedding_provider": settings.embedding_provider, "embedding_dim": settings.embedding_dim}
