"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from motocrm.api.webhooks import router as webhooks_router
from motocrm.api.leads import router as leads_router
from motocrm.api.sync_admin import router as sync_admin_router
from motocrm.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(leads_router)
api_router.include_router(sync_admin_router)
api_router.include_router(health_router)
