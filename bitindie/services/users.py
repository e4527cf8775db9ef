"""
User Service - resolve buyer identities to user rows.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.db.dml import insert_or_ignore
from bitindie.db.models import User, utc_now
from bitindie.exceptions import WriteVerificationError
from bitindie.models.domain import BuyerIdentity

logger = get_logger(__name__)


class UserService:
    """Users keyed by public key. Never commits."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize user service with database session."""
        self.session = session

    async def resolve_or_create(self, buyer: BuyerIdentity) -> User:
        """
        Find the user for a pubkey, creating it on first sight.

        Concurrent first sights collapse onto one row via the unique pubkey.
        """
        now = utc_now()
        created_id = await insert_or_ignore(
            self.session,
            User,
            {
                "pubkey": buyer.pubkey,
                "display_name": buyer.display_name,
                "created_at": now,
                "updated_at": now,
            },
            ["pubkey"],
        )

        user = await self.get_by_pubkey(buyer.pubkey)
        if user is None:
            raise WriteVerificationError(f"User for pubkey {buyer.pubkey[:12]}... not found")

        if created_id is not None:
            logger.info("user_created", user_id=str(user.id))

        return user

    async def get_by_pubkey(self, pubkey: str) -> User | None:
        """User for a pubkey, if any."""
        result = await self.session.execute(select(User).where(User.pubkey == pubkey))
        return result.scalar_one_or_none()
