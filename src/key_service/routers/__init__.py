from key_service.routers.auth_api import router as auth_router

__all__ = ["auth_router"]
