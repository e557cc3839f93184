"""Single-writer lease for a resolver identity.

Two coordinator processes must never drive the same resolver's swaps from
the same durable store. The lease is a row keyed by resolver identity that
records which instance holds it and until when.
"""

import logging
from datetime import timedelta
from typing import Optional

from swapresolver.errors import LeaseHeldError
from swapresolver.ledger.database import Database
from swapresolver.ledger.models import ResolverLease, utcnow

logger = logging.getLogger(__name__)


class ResolverLock:
    """Lease held by one coordinator instance.

    Example:
        async with ResolverLock(db, resolver_address, instance_id):
            await coordinator.run()
    """

    def __init__(
        self,
        db: Database,
        identity: str,
        holder: str,
        ttl_seconds: int = 60,
    ):
        """Initialize the lease.

        Args:
            db: Database holding the lease table
            identity: Resolver identity (address) to lock
            holder: Unique id of this process
            ttl_seconds: Lease lifetime; renew before it runs out
        """
        self.db = db
        self.identity = identity.lower()
        self.holder = holder
        self.ttl = timedelta(seconds=ttl_seconds)
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    async def acquire(self) -> None:
        """Take the lease, or take over an expired one.

        Raises:
            LeaseHeldError: if another live instance holds the lease
        """
        async with self.db.session() as session:
            now = utcnow()
            lease = await session.get(ResolverLease, self.identity)
            if lease is None:
                session.add(
                    ResolverLease(
                        identity=self.identity,
                        holder=self.holder,
                        acquired_at=now,
                        expires_at=now + self.ttl,
                    )
                )
            elif lease.holder != self.holder and lease.expires_at > now:
                logger.warning(
                    f"Resolver {self.identity} leased by {lease.holder} until {lease.expires_at}"
                )
                raise LeaseHeldError(self.identity, lease.holder)
            else:
                if lease.holder != self.holder:
                    logger.warning(
                        f"Taking over expired lease for {self.identity} from {lease.holder}"
                    )
                    lease.acquired_at = now
                lease.holder = self.holder
                lease.expires_at = now + self.ttl
            await session.flush()

        self._acquired = True
        logger.info(f"Lease acquired for resolver {self.identity} by {self.holder}")

    async def renew(self) -> None:
        """Extend the lease; fails if another instance has taken it over."""
        async with self.db.session() as session:
            lease = await session.get(ResolverLease, self.identity)
            if lease is None or lease.holder != self.holder:
                self._acquired = False
                raise LeaseHeldError(self.identity, lease.holder if lease else "(none)")
            lease.expires_at = utcnow() + self.ttl
            await session.flush()
        logger.debug(f"Lease renewed for resolver {self.identity}")

    async def release(self) -> None:
        """Give up the lease if this instance still holds it."""
        if not self._acquired:
            return
        async with self.db.session() as session:
            lease = await session.get(ResolverLease, self.identity)
            if lease is not None and lease.holder == self.holder:
                await session.delete(lease)
        self._acquired = False
        logger.info(f"Lease released for resolver {self.identity}")

    async def holder_of(self) -> Optional[str]:
        """Current live holder, if any."""
        async with self.db.session() as session:
            lease = await session.get(ResolverLease, self.identity)
            if lease is None or lease.expires_at <= utcnow():
                return None
            return lease.holder

    async def __aenter__(self) -> "ResolverLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False
