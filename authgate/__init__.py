"""authgate - OAuth login, sliding sessions and CSRF protection for FastAPI.

Quick start::

    from fastapi import Depends, FastAPI
    from authgate import AuthGate, SessionContext, session_context

    gate = AuthGate.from_settings()
    app = FastAPI(lifespan=gate.lifespan)
    gate.install(app)

    @app.get("/me")
    async def me(context: SessionContext = Depends(session_context)):
        return {"user_id": context.user_id}
"""

from __future__ import annotations

from .adapters import Adapter, MemoryAdapter, UnimplementedAdapter, create_adapter
from .config import AuthGateSettings, GateConfig
from .csrf import CsrfGuard
from .exceptions import AuthGateException
from .gate import AuthGate
from .handshake import AuthOrchestrator, create_auth_router, generate_state
from .models import (
    Account,
    AccountType,
    CsrfToken,
    ProviderType,
    Session,
    SessionContext,
    User,
    VerificationToken,
)
from .providers import (
    EntraIDProvider,
    GitHubProvider,
    Provider,
    ProviderRegistry,
    UnimplementedProvider,
)
from .session import ProtectMiddleware, SessionManager, session_context


__version__ = "0.1.0"

__all__ = [
    "Account",
    "AccountType",
    "Adapter",
    "AuthGate",
    "AuthGateException",
    "AuthGateSettings",
    "AuthOrchestrator",
    "CsrfGuard",
    "CsrfToken",
    "EntraIDProvider",
    "GateConfig",
    "GitHubProvider",
    "MemoryAdapter",
    "ProtectMiddleware",
    "Provider",
    "ProviderRegistry",
    "ProviderType",
    "Session",
    "SessionContext",
    "SessionManager",
    "UnimplementedAdapter",
    "UnimplementedProvider",
    "User",
    "VerificationToken",
    "__version__",
    "create_adapter",
    "create_auth_router",
    "generate_state",
    "session_context",
]
