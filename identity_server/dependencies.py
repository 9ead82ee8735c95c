"""
FastAPI dependencies wiring per-request components to the process-wide configuration on app.state.
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from identity_server.clients import ClientRegistry
from identity_server.database import get_db
from identity_server.health import HealthMonitor
from identity_server.keys import SigningKeys, get_signing_keys
from identity_server.scopes import ScopeCatalog
from identity_server.sessions import SessionManager
from identity_server.tokens import TokenIssuer
from identity_server.users import UserStore


def get_client_registry(request: Request) -> ClientRegistry:
    return request.app.state.clients


def get_scope_catalog(request: Request) -> ScopeCatalog:
    return request.app.state.scopes


def get_keys() -> SigningKeys:
    return get_signing_keys()


def get_user_store(db: Session = Depends(get_db)) -> UserStore:
    return UserStore(db)


def get_token_issuer(
    db: Session = Depends(get_db),
    clients: ClientRegistry = Depends(get_client_registry),
    scopes: ScopeCatalog = Depends(get_scope_catalog),
    keys: SigningKeys = Depends(get_keys),
) -> TokenIssuer:
    return TokenIssuer(db, clients, scopes, keys)


def get_session_manager(request: Request, users: UserStore = Depends(get_user_store)) -> SessionManager:
    return SessionManager(users, request.app.state.session_secret)


def get_health_monitor(request: Request) -> HealthMonitor:
    return request.app.state.health_monitor
