# foodrelay/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from foodrelay.core.config import settings
from foodrelay.core.errors import DispatchError
from foodrelay.deps import get_store
from foodrelay.routers import donations, notifications, users, volunteers
from foodrelay.services.supervisor import Supervisor

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # resolve through overrides so tests get their own store
    store = app.dependency_overrides.get(get_store, get_store)()
    await store.ensure_indexes()

    supervisor = None
    if settings.supervisor_enabled:
        supervisor = Supervisor(store, settings)
        supervisor.start()
    app.state.supervisor = supervisor

    yield

    if supervisor is not None:
        await supervisor.stop()
    await store.close()


# --- Create app FIRST ---
app = FastAPI(lifespan=lifespan, title="FoodRelay Dispatch API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# ---------------- Include routers ----------------
app.include_router(donations.router)        # /api/donations
app.include_router(volunteers.router)       # /api/volunteers
app.include_router(users.router)            # /api/users
app.include_router(notifications.router)    # /api/notifications

# Health
@app.get("/health")
def health():
    return {"ok": True}
