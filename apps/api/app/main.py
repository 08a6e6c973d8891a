from apps.api.app.api.push import router as push_router
from apps.api.app.routes.auth import router as auth_router

import apps.api.app.models.auth_audit_event
import apps.api.app.models.device_token
import apps.api.app.models.push_subscription
import apps.api.app.models.refresh_token
import apps.api.app.models.user

from fastapi import FastAPI

from apps.api.app.core.config import settings
from apps.api.app.core.logging import configure_logging
from apps.api.app.core.security import require_signing_secret
from apps.api.app.db.session import engine, Base
from apps.api.app.services.dispatcher import get_mobile_push_channel, get_web_push_channel

configure_logging(settings.LOG_LEVEL)

# No safe way to run without the signing secret: refuse to start.
require_signing_secret()

# Push channels are configured once here; missing credentials only disable that channel.
get_web_push_channel()
get_mobile_push_channel()

app = FastAPI(title="hotel guest-services API")

Base.metadata.create_all(bind=engine)

app.include_router(auth_router)
app.include_router(push_router)


@app.get("/healthz")
def healthz():
    return {
        "status": "ok",
        "push": {
            "web": get_web_push_channel().available,
            "mobile": get_mobile_push_channel().available,
        },
    }


@app.get("/")
def root():
    return {"app": "hotel-guest-services", "docs": "/docs"}
