from fastapi import APIRouter

from .endpoints import accounts, catalog, gifts, health, program, referrals, sync_queue

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(accounts.router)
router.include_router(catalog.router)
router.include_router(gifts.router)
router.include_router(referrals.router)
router.include_router(program.router)
router.include_router(sync_queue.router)
