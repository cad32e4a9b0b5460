import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from relaxgo.api import applications, bookings
from relaxgo.core.config import settings
from relaxgo.core.exceptions import RelaxGoError
from relaxgo.core.logger import logger, setup_logging
from relaxgo.services.approval_service import ApprovalService
from relaxgo.services.booking_service import BookingService
from relaxgo.services.completion_worker import completion_loop
from relaxgo.services.identity_service import IdentityService
from relaxgo.services.store import Store, build_store

setup_logging()


def create_app(store: Optional[Store] = None, run_completion_sweep: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("🚀 Starting RelaxGo booking core")
        app.state.store = store or build_store()
        app.state.identity_service = IdentityService(app.state.store)
        app.state.booking_service = BookingService(app.state.store)
        app.state.approval_service = ApprovalService(app.state.store, app.state.identity_service)

        stop_event = asyncio.Event()
        sweep_task = None
        if run_completion_sweep:
            sweep_task = asyncio.create_task(completion_loop(app.state.booking_service, stop_event))
        yield
        # Shutdown
        logger.info("🛑 Shutting down backend")
        stop_event.set()
        if sweep_task:
            await sweep_task
        await app.state.store.close()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version="0.1.0",
        lifespan=lifespan
    )

    @app.exception_handler(RelaxGoError)
    async def domain_exception_handler(request: Request, exc: RelaxGoError):
        if exc.status_code >= 500:
            logger.error(f"❌ {type(exc).__name__}: {exc.detail}")
        else:
            logger.info(f"↩️ {type(exc).__name__} on {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": type(exc).__name__, "detail": exc.detail}
        )

    # Global Exception Handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"🔥 UNHANDLED ERROR: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={"message": "Internal Server Error", "detail": "An unexpected error occurred. Please contact support."}
        )

    app.include_router(bookings.router, prefix=settings.API_V1_STR, tags=["Bookings"])
    app.include_router(applications.router, prefix=settings.API_V1_STR, tags=["Applications"])

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "environment": settings.ENVIRONMENT, "timestamp": datetime.now().isoformat()}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("relaxgo.main:app", host="0.0.0.0", port=settings.PORT, reload=True)
