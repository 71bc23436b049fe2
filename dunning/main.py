import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dunning.core.config import settings
from dunning.core.errors import DunningError
from dunning.routers import dunning_retry_policies, dunning_sequences

logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {
        "name": "Dunning Sequences",
        "description": "Track, retry, escalate and recover failed subscription payments.",
    },
    {
        "name": "Retry Policies",
        "description": "Configure retry schedules per organization and plan.",
    },
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Payment recovery engine for subscription billing. "
        "Schedules retries of failed invoice payments, escalates stubborn cases "
        "to customer success, and reports on revenue at risk."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)


@app.exception_handler(DunningError)
async def dunning_error_handler(request: Request, exc: DunningError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(
    dunning_sequences.router,
    prefix="/v1/dunning_sequences",
    tags=["Dunning Sequences"],
)
app.include_router(
    dunning_retry_policies.router,
    prefix="/v1/dunning_retry_policies",
    tags=["Retry Policies"],
)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "domain": settings.APP_DOMAIN,
        "status": "running",
    }
