from fastapi import APIRouter

from .endpoints import loyalty, observability


router = APIRouter(prefix="/v1")
router.include_router(loyalty.router)
router.include_router(observability.router)
