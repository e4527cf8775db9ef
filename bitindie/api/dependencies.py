"""
FastAPI Dependencies - Authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from datetime import UTC, datetime
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.config import settings
from bitindie.db.models import ApiSession
from bitindie.db.session import get_read_db
from bitindie.exceptions import AuthenticationError

logger = get_logger(__name__)

# Bearer token scheme for API sessions
bearer_scheme = HTTPBearer(auto_error=False)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


async def resolve_session_user_id(db: AsyncSession, token: str) -> UUID:
    """
    Resolve a bearer token to its user id.

    Raises:
        AuthenticationError: token malformed, unknown or expired
    """
    try:
        session_id = UUID(token.strip())
    except ValueError as exc:
        raise AuthenticationError("malformed session token") from exc

    api_session = await db.get(ApiSession, session_id)
    if api_session is None:
        raise AuthenticationError("unknown session")

    if _as_utc(api_session.expires_at) <= datetime.now(UTC):
        raise AuthenticationError("session expired")

    return api_session.user_id


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_read_db),
) -> UUID:
    """
    Authenticate a request by its bearer session.

    Missing, malformed, unknown or expired sessions are 401. An unreachable
    store is 503, never a 401.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await resolve_session_user_id(db, credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("session_auth_failed", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except (OperationalError, InterfaceError) as exc:
        logger.error("session_store_unavailable", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Store unavailable",
        ) from exc


async def require_invoice_webhook_secret(
    x_invoice_webhook_secret: str | None = Header(None, alias="X-Invoice-Webhook-Secret"),
) -> None:
    """
    Guard payment notifications with a shared secret when one is configured.
    """
    expected = settings.invoice_webhook_secret.strip()
    if not expected:
        return

    provided = (x_invoice_webhook_secret or "").strip()
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        logger.warning("invoice_webhook_auth_failed", has_header=bool(provided))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
