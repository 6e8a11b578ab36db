from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud, schemas
from ..database import get_db
from ..deps import get_current_user

router = APIRouter(prefix="/search", tags=["search"])

SNIPPET_CHARS = 200
SNIPPET_LEAD_CHARS = 80


def make_snippet(content: Optional[str], query: str) -> Optional[str]:
    """A window of the message around the first case-insensitive hit."""
    if content is None:
        return None
    at = content.lower().find(query.lower())
    start = max(0, at - SNIPPET_LEAD_CHARS)
    return content[start:start + SNIPPET_CHARS]


@router.get("/conversations", response_model=schemas.ConversationSearchResponse)
async def search_conversations(
    q: str = Query(""),
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    query = q.strip()
    if not query:
        return schemas.ConversationSearchResponse(results=[])
    hits = await crud.search_conversations(db, auth.user_id, query)
    return schemas.ConversationSearchResponse(
        results=[
            schemas.ConversationSearchHit(
                id=conversation.id,
                title=conversation.title,
                archived=conversation.archived,
                snippet=make_snippet(content, query),
                relevance=relevance,
                created_at=conversation.created_at,
                updated_at=conversation.updated_at,
            )
            for conversation, relevance, content in hits
        ]
    )
