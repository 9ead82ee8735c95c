"""
Identity Server (OIDC Provider).
Authorization code + PKCE and refresh grants for the Pipster web app, tenant-scoped users,
session cookie login, health probes.
"""
import logging
import secrets
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from identity_server.account import router as account_router
from identity_server.authorize import router as authorize_router
from identity_server.clients import ClientRegistry
from identity_server.config import (
    ENVIRONMENT,
    HEALTH_CHECK_TIMEOUT_SECONDS,
    IS_DEVELOPMENT,
    ISSUER,
    LOG_LEVEL,
    SESSION_SECRET,
    load_identity_configuration,
)
from identity_server.database import SessionLocal, engine, init_db
from identity_server.discovery import build_discovery_document
from identity_server.errors import OAuthError
from identity_server.health import HealthMonitor, check_database, check_identity_server
from identity_server.health_endpoints import router as health_router
from identity_server.keys import get_signing_keys
from identity_server.logout import router as logout_router
from identity_server.revoke import router as revoke_router
from identity_server.scopes import ScopeCatalog
from identity_server.seed import seed_from_env
from identity_server.token_endpoint import NO_STORE_HEADERS
from identity_server.token_endpoint import router as token_router
from identity_server.userinfo import router as userinfo_router
from identity_server.well_known import router as well_known_router

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load signing keys; in Development create missing tables and seed a user from env."""
    logger.info("Starting Identity Server (environment=%s, issuer=%s)", ENVIRONMENT, ISSUER)
    get_signing_keys()
    if IS_DEVELOPMENT:
        try:
            init_db()
            logger.info("Database schema created/verified")
        except Exception:
            # Keep serving; the database health check reports the problem
            logger.exception("Error creating database schema")
        else:
            db = SessionLocal()
            try:
                seed_from_env(db)
            finally:
                db.close()
    yield
    app.state.health_monitor.shutdown()
    logger.info("Identity Server stopped")


configure_logging()

configuration = load_identity_configuration()
clients = ClientRegistry(configuration.clients)
scopes = ScopeCatalog(configuration.identity_resources, configuration.api_scopes)

session_secret = SESSION_SECRET
if not session_secret:
    session_secret = secrets.token_urlsafe(32)
    logger.warning("IDENTITY_SESSION_SECRET not set; using an ephemeral secret (sessions end on restart)")

app = FastAPI(title="Identity Server", version="1.0.0", lifespan=lifespan)
app.state.issuer = ISSUER
app.state.clients = clients
app.state.scopes = scopes
app.state.session_secret = session_secret
app.state.health_monitor = HealthMonitor(
    {
        "database": lambda: check_database(engine),
        "identityserver": lambda: check_identity_server(
            lambda: build_discovery_document(ISSUER, clients, scopes),
            lambda: get_signing_keys().jwks(),
        ),
    },
    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(clients.allowed_cors_origins()),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "HTTP %s %s responded %s in %.1f ms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    """OAuth error response: {"error", "error_description"}, never cached."""
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=NO_STORE_HEADERS)


app.include_router(authorize_router, tags=["authorize"])
app.include_router(account_router, tags=["account"])
app.include_router(token_router, tags=["token"])
app.include_router(revoke_router, tags=["token"])
app.include_router(userinfo_router, tags=["userinfo"])
app.include_router(logout_router, tags=["logout"])
app.include_router(well_known_router, tags=["well-known"])
app.include_router(health_router, tags=["health"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "identity_server.main:app",
        host="127.0.0.1",
        port=5001,
        reload=IS_DEVELOPMENT,
    )
