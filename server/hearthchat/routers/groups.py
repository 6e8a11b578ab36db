from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud, schemas
from ..database import get_db
from ..deps import get_current_user

router = APIRouter(prefix="/groups", tags=["groups"])


@router.post("", response_model=schemas.GroupOut, status_code=status.HTTP_201_CREATED)
async def create_group(
    payload: schemas.GroupCreate,
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    return await crud.create_group(db, auth.user_id, payload.name, payload.guidance_text)


@router.get("")
async def list_groups(
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    return [schemas.GroupOut.model_validate(g) for g in await crud.list_groups(db, auth.user_id)]
