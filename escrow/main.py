import logging
import os

import stripe
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from escrow import settings
from escrow.database import Base, engine, SessionLocal
from escrow.errors import EscrowError, NotFound
from escrow.events import dispatch_in_background
from escrow.payments import confirm_gateway_payment
from escrow.routes import router

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("escrow")

app = FastAPI(title="Order Escrow Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    if exc.retryable:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str = Header(None)
):
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            os.getenv("STRIPE_WEBHOOK_SECRET")
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] != "payment_intent.succeeded":
        logger.debug("ignoring stripe event %s", event["type"])
        return {"ok": True}

    intent = event["data"]["object"]
    db = SessionLocal()
    try:
        confirm_gateway_payment(db, intent["id"])
    except NotFound:
        logger.warning("stripe confirmed unknown payment intent %s", intent["id"])
    except EscrowError as exc:
        if exc.retryable:
            # let Stripe redeliver
            raise
        logger.error("payment intent %s not applied: %s (%s)", intent["id"], exc.message, exc.kind)
        return {"ok": True, "applied": False, "reason": exc.kind}
    finally:
        db.close()

    background_tasks.add_task(dispatch_in_background)
    return {"ok": True}
