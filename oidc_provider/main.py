"""
OpenID Connect provider: authorization code + PKCE, token exchange and rotation, revocation,
introspection, userinfo, discovery, and the first-party register/login/logout API.
Login and consent pages are hosted elsewhere; this service only redirects to them.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from oidc_provider.accounts import router as accounts_router
from oidc_provider.authorize import router as authorize_router
from oidc_provider.config import LOG_LEVEL
from oidc_provider.database import SessionLocal, init_db
from oidc_provider.errors import register_error_handlers
from oidc_provider.introspect import router as introspect_router
from oidc_provider.keys import get_signing_key
from oidc_provider.logout import router as logout_router
from oidc_provider.revoke import router as revoke_router
from oidc_provider.seed import seed_from_env
from oidc_provider.token_endpoint import router as token_router
from oidc_provider.userinfo import router as userinfo_router
from oidc_provider.well_known import router as well_known_router

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load signing key, seed user/client from env on startup."""
    init_db()
    _, kid = get_signing_key()
    logger.info("Signing key loaded (kid=%s)", kid)
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    yield


app = FastAPI(title="OIDC Provider", version="1.0.0", lifespan=lifespan)
register_error_handlers(app)
app.include_router(authorize_router, tags=["authorize"])
app.include_router(token_router, tags=["token"])
app.include_router(revoke_router, tags=["revoke"])
app.include_router(introspect_router, tags=["introspect"])
app.include_router(userinfo_router, tags=["userinfo"])
app.include_router(accounts_router, tags=["accounts"])
app.include_router(logout_router, tags=["logout"])
app.include_router(well_known_router, tags=["well-known"])


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "oidc_provider"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "oidc_provider.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
