from fastapi import APIRouter, Depends

from app.api.auth import router as auth_router
from app.api.chats import router as chats_router
from app.api.deps import limit_api_requests, limit_auth_requests
from app.api.users import router as users_router

router = APIRouter(dependencies=[Depends(limit_api_requests)])

router.include_router(
    auth_router, prefix="/auth", tags=["auth"], dependencies=[Depends(limit_auth_requests)]
)
router.include_router(users_router)
router.include_router(chats_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Parley API"}
