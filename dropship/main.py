import contextlib

import structlog
from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.concurrency import run_in_threadpool

from dropship.config import get_settings
from dropship.credentials import TokenRefreshScheduler, credential_store
from dropship.database import Base, engine
from dropship.errors import SignatureInvalid
from dropship.log import configure_logging
from dropship.orchestrator import orchestrator
from dropship.routes import router
from dropship.stripe_service import construct_event

logger = structlog.get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """Process bootstrap: logging, schema, optional token warm-up."""
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    Base.metadata.create_all(bind=engine)

    scheduler = None
    if settings.token_refresh_interval_seconds > 0:
        scheduler = TokenRefreshScheduler(
            credential_store, settings.token_refresh_interval_seconds
        )
        scheduler.start()
    app.state.token_scheduler = scheduler
    yield
    if scheduler is not None:
        scheduler.stop()


app = FastAPI(title="Dropship Fulfillment Service", lifespan=lifespan)

app.include_router(router)


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = construct_event(
            payload,
            stripe_signature,
            get_settings().stripe_webhook_secret
        )
    except ValueError:
        logger.warning("webhook_payload_invalid")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except SignatureInvalid:
        logger.warning("webhook_signature_invalid")
        raise HTTPException(status_code=400, detail="Invalid signature")

    logger.info("webhook_received", event_type=event["type"], event_id=event.get("id"))
    await run_in_threadpool(orchestrator.handle_event, event)

    return {"received": True}
