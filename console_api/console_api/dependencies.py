"""FastAPI dependency injection for database sessions, settings and billing services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from billing_core.state.database import create_session_factory, get_engine, set_tenant_context
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from console_api.config import APISettings, BillingConfig, load_api_settings
from console_api.middleware.rbac import Role, get_user_role
from console_api.services.dead_letter import HttpDeadLetterNotifier
from console_api.services.enforcement import EntitlementGate
from console_api.services.webhook_dispatcher import StripeWebhookDispatcher

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]


def get_billing_config(settings: SettingsDep) -> BillingConfig:
    """Billing configuration derived from the current settings."""
    return BillingConfig.from_settings(settings)


BillingConfigDep = Annotated[BillingConfig, Depends(get_billing_config)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = create_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    The webhook dispatcher opens several short transactions per delivery and
    therefore takes the factory rather than a request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_service_session(
    factory: SessionFactoryDep,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    .. warning:: **No Row-Level Security**

       Queries executed through this session can read and write rows of
       **any** tenant.  It is the privileged handle of the billing pipeline
       (entitlement reads and rebuilds, checkout, platform-operator routes)
       and of the health probes.

    The session commits on clean exit and rolls back on exception.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# WARNING: ServiceSessionDep bypasses RLS.  Guard every route using it by
# tenant id from the session token or by the platform-admin role.
ServiceSessionDep = Annotated[AsyncSession, Depends(get_service_session)]


async def get_tenant_session(
    request: Request,
    factory: SessionFactoryDep,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS tenant context set.

    Extracts ``tenant_id`` from the authenticated request state and binds
    ``app.tenant_id`` on the session so that PostgreSQL Row-Level Security
    policies restrict all queries to the authenticated tenant's rows.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    session = factory()
    try:
        await set_tenant_context(session, tenant_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# ---------------------------------------------------------------------------
# Webhook dispatcher
# ---------------------------------------------------------------------------

_dead_letter_notifier: HttpDeadLetterNotifier | None = None


def init_dead_letter_notifier(settings: APISettings) -> HttpDeadLetterNotifier | None:
    """Create the dead-letter notifier when an operations webhook is configured."""
    global _dead_letter_notifier  # noqa: PLW0603
    if settings.dead_letter_webhook_url:
        _dead_letter_notifier = HttpDeadLetterNotifier(settings.dead_letter_webhook_url)
    return _dead_letter_notifier


async def dispose_dead_letter_notifier() -> None:
    global _dead_letter_notifier  # noqa: PLW0603
    if _dead_letter_notifier is not None:
        await _dead_letter_notifier.close()
        _dead_letter_notifier = None


def get_webhook_dispatcher(
    factory: SessionFactoryDep,
    config: BillingConfigDep,
) -> StripeWebhookDispatcher:
    """Build the Stripe webhook dispatcher for one delivery."""
    return StripeWebhookDispatcher(factory, config, dead_letter_hook=_dead_letter_notifier)


WebhookDispatcherDep = Annotated[StripeWebhookDispatcher, Depends(get_webhook_dispatcher)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract the active tenant from authenticated request state.

    Raises
    ------
    HTTPException(401)
        If the request is not authenticated.
    HTTPException(400)
        If the session has no active tenant selected.
    """
    if getattr(request.state, "sub", None) is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=400, detail="No active tenant selected")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract user identity from authenticated request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]

RoleDep = Annotated[Role, Depends(get_user_role)]

# ---------------------------------------------------------------------------
# Entitlement gating
# ---------------------------------------------------------------------------


def get_entitlement_gate(session: ServiceSessionDep) -> EntitlementGate:
    return EntitlementGate(session)


EntitlementGateDep = Annotated[EntitlementGate, Depends(get_entitlement_gate)]


def require_feature(feature_key: str) -> Callable[..., None]:
    """Return a FastAPI dependency that enforces an entitlement feature gate.

    The tenant's snapshot must grant *feature_key* through an add-on or a
    truthy limit, and the tenant must not be inactive or past its grace
    period.  Raises ``HTTPException(403)`` carrying the denial reason.

    Usage::

        @router.post("/tracking/live")
        async def start_live_tracking(
            ...,
            _gate: None = Depends(require_feature("realtime_tracking")),
        ):
            ...
    """

    async def _gate(gate: EntitlementGateDep, tenant_id: TenantDep) -> None:
        decision = await gate.can_use_feature(tenant_id, feature_key)
        if not decision.allowed:
            logger.info("Feature gate denied tenant=%s feature=%s: %s", tenant_id, feature_key, decision.reason)
            raise HTTPException(status_code=403, detail=decision.reason)

    return _gate  # type: ignore[return-value]
