from fastapi import APIRouter
from app.api.v1.endpoints import webhooks, communications, decisions, approvals, rules, actions, dashboard

api_router = APIRouter()
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(communications.router, prefix="/communications", tags=["communications"])
api_router.include_router(decisions.router, prefix="/decisions", tags=["decisions"])
api_router.include_router(approvals.router, prefix="/approvals", tags=["approvals"])
api_router.include_router(rules.router, prefix="/rules", tags=["rules"])
api_router.include_router(actions.router, prefix="/actions", tags=["actions"])
api_router.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
