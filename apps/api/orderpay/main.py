import time
from contextlib import asynccontextmanager
from pathlib import Path
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles

from orderpay.config import allowed_origins, ensure_secure_runtime_settings, settings
from orderpay.db.migration_check import prepare_schema
from orderpay.db.session import engine
from orderpay.integrations.proof_store import PROOF_KEY_PREFIX
from orderpay.observability import configure_logging, log_event, metrics_store, set_request_id
from orderpay.routers.health import router as health_router
from orderpay.routers.orders import router as orders_router
from orderpay.routers.payment_sessions import router as payment_sessions_router


@asynccontextmanager
async def lifespan(_app: FastAPI):
    import orderpay.models  # noqa: F401 (register all SQLAlchemy models)

    configure_logging()
    ensure_secure_runtime_settings()
    prepare_schema(engine)
    yield


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Order placement with a time-boxed manual payment session",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    set_request_id(request_id)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    metrics_store.increment("http_requests_total")
    metrics_store.observe("http_request_duration_seconds", elapsed)
    log_event("http_request", reason=f"{request.method} {request.url.path} {response.status_code}")
    return response


app.include_router(health_router)
app.include_router(orders_router)
app.include_router(payment_sessions_router)
app.mount(
    f"/{PROOF_KEY_PREFIX}",
    StaticFiles(directory=Path(settings.proof_storage_dir) / PROOF_KEY_PREFIX, check_dir=False),
    name="payment-proofs",
)
