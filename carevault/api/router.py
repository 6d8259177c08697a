from fastapi import APIRouter
from carevault.modules.sessions.router import router as sessions_router
from carevault.modules.capability.router import router as capability_router
from carevault.modules.notifications.router import router as notifications_router
from carevault.modules.directory.router import router as directory_router
from carevault.modules.audit.router import router as audit_router

api_router = APIRouter()
api_router.include_router(sessions_router, tags=["sessions"])
api_router.include_router(capability_router, tags=["capability"])
api_router.include_router(notifications_router, tags=["notifications"])
api_router.include_router(directory_router, tags=["patients"])
api_router.include_router(audit_router, tags=["audit"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
