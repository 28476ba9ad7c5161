"""The AuthGate facade.

Builds the session manager, CSRF guard and handshake orchestrator once
from validated configuration and installs them on a FastAPI app.

Example
-------
>>> gate = AuthGate.from_settings()
>>> app = FastAPI(lifespan=gate.lifespan)
>>> gate.install(app)
"""

from __future__ import annotations

import contextlib
import logging

from typing import TYPE_CHECKING, Any

from starlette.requests import Request
from starlette.responses import Response

from .adapters import create_adapter
from .adapters.memory import MemoryAdapter
from .config import AuthGateSettings, GateConfig
from .csrf import CsrfGuard
from .exceptions import AuthGateException
from .handshake import AuthOrchestrator, create_auth_router
from .providers import ProviderRegistry, create_providers_from_settings
from .session import ProtectMiddleware, SessionManager


if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

    from .adapters.base import Adapter


logger = logging.getLogger("authgate")


class AuthGate:
    """Wires the authentication components into an application.

    Parameters
    ----------
    registry : ProviderRegistry
        The configured providers.
    adapter : Adapter, optional
        Storage backend (defaults to an in-memory adapter).
    config : GateConfig, optional
        Runtime configuration (defaults to one built from settings).
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter: Adapter | None = None,
        config: GateConfig | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or GateConfig.from_settings()
        self.adapter = adapter or MemoryAdapter(clock=self.config.clock)
        self.sessions = SessionManager(self.adapter, self.config)
        self.csrf = CsrfGuard(self.adapter, self.config)
        self.orchestrator = AuthOrchestrator(self.registry, self.adapter, self.config, self.csrf)

    @classmethod
    def from_settings(cls, settings: AuthGateSettings | None = None, **overrides: Any) -> AuthGate:
        """Build a gate from loaded settings.

        Parameters
        ----------
        settings : AuthGateSettings, optional
            Settings; loaded from files and environment when omitted.
        **overrides : Any
            Runtime collaborators passed to :meth:`GateConfig.from_settings`.

        Returns
        -------
        AuthGate
            A gate with the configured providers and storage backend.
        """
        settings = settings or AuthGateSettings()
        config = GateConfig.from_settings(settings, **overrides)
        registry = ProviderRegistry(*create_providers_from_settings(settings, clock=config.clock))
        return cls(
            registry=registry,
            adapter=create_adapter(settings.storage, clock=config.clock),
            config=config,
        )

    def handle_error(self, request: Request, exc: Exception) -> Response:
        """Exception handler delegating to the configured error handler."""
        return self.config.error_handler(request, exc)

    def install(self, app: FastAPI) -> None:
        """Install the middleware, routes and exception handlers on *app*.

        Freezes the provider registry: no providers can be added once the
        app serves traffic.
        """
        app.add_middleware(ProtectMiddleware, manager=self.sessions)
        app.include_router(create_auth_router(self.orchestrator))
        app.add_exception_handler(AuthGateException, self.handle_error)
        self.registry.freeze()
        logger.info("authgate installed with providers: %s", ", ".join(self.registry.ids()) or "none")

    async def close(self) -> None:
        """Close provider HTTP clients and the storage backend."""
        await self.registry.close()
        await self.adapter.close()

    @contextlib.asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:  # pylint: disable=unused-argument
        """Lifespan handler closing the gate on shutdown."""
        try:
            yield
        finally:
            await self.close()
