"""
Main API router that includes all route modules.
"""
from fastapi import APIRouter
from app.api.routes import deals, milestones, disputes, users, trust, kyc

api_router = APIRouter()

# Include all route modules
api_router.include_router(deals.router)
api_router.include_router(milestones.router)
api_router.include_router(disputes.router)
api_router.include_router(users.router)
api_router.include_router(trust.router)
api_router.include_router(kyc.router)
