import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI

from key_lifecycle import (
    CredentialStore,
    GoogleOAuthProvider,
    LifecycleManager,
    LifecycleSettings,
    ProviderAdapter,
    load_settings,
    validate_settings,
)
from key_service.auth import get_lifecycle_manager
from key_service.routers import auth_router

# Configure logging
logging.basicConfig(level=logging.INFO)

# Load environment variables from .env file
load_dotenv()


def create_app(
    settings: LifecycleSettings | None = None,
    provider: ProviderAdapter | None = None,
) -> FastAPI:
    """Build the service. Settings and provider default to the environment."""

    # --- Lifespan Management ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved_settings = settings or load_settings()
        validate_settings(resolved_settings)

        store = CredentialStore(resolved_settings.keys_file)
        manager = LifecycleManager(
            store=store,
            provider=provider or GoogleOAuthProvider.from_settings(resolved_settings),
            settings=resolved_settings,
        )
        await manager.start()

        app.state.settings = resolved_settings
        app.state.lifecycle_manager = manager
        logging.info("Key lifecycle manager initialized.")
        try:
            yield
        finally:
            await manager.close()
            logging.info("Key lifecycle manager closed.")

    app = FastAPI(lifespan=lifespan)
    app.include_router(auth_router)

    @app.get("/health")
    async def health(manager: LifecycleManager = Depends(get_lifecycle_manager)):
        return {"status": "ok", "keys": len(manager)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
