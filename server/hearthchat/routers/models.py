from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud, schemas
from ..database import get_db
from ..deps import get_current_user
from ..services.model_resolution import model_access_allowed

router = APIRouter(prefix="/models", tags=["models"])


@router.get("")
async def list_models(
    db: AsyncSession = Depends(get_db),
    auth: schemas.AuthContext = Depends(get_current_user),
):
    """Installed models the caller may pick, judged with their account safe-mode setting."""
    installed = await crud.list_installed_models(db)
    return [
        schemas.ModelOut.model_validate(m)
        for m in installed
        if model_access_allowed(auth.role, auth.safe_mode, m)
    ]
