"""
Recipient share provider.

Reads the current snapshot of payout recipients. The snapshot is read fresh
on every distribution cycle and never cached.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Tuple

from solders.pubkey import Pubkey
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
import structlog

from revenue_distributor.core.database import Database
from revenue_distributor.core.exceptions import DatabaseError, NoRecipientsError
from revenue_distributor.models.recipient_share import RecipientShareRecord
from revenue_distributor.services.payouts.types import RecipientShare


logger = structlog.get_logger(__name__)

MAX_PERCENTAGE = Decimal(100)


def parse_share(address: Any, percentage: Any) -> RecipientShare:
    """Validate one raw row; raises ValueError if it cannot be paid."""
    if not isinstance(address, str) or not address:
        raise ValueError("missing address")
    try:
        Pubkey.from_string(address)
    except Exception as e:
        raise ValueError(f"invalid address: {e}") from e

    try:
        value = percentage if isinstance(percentage, Decimal) else Decimal(str(percentage))
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"non-numeric percentage {percentage!r}") from e
    if not value.is_finite() or value <= 0 or value > MAX_PERCENTAGE:
        raise ValueError(f"percentage {percentage!r} outside (0, 100]")

    return RecipientShare(address=address, percentage=value)


def validate_rows(rows: Iterable[Tuple[Any, Any]]) -> List[RecipientShare]:
    """Keep the rows that can be paid, in input order."""
    shares = []
    for address, percentage in rows:
        try:
            shares.append(parse_share(address, percentage))
        except ValueError as e:
            logger.warning("Skipping invalid recipient", address=address, reason=str(e))
    return shares


class DatabaseRecipientProvider:
    """Full snapshot read of the recipient_shares table, ordered by address."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="recipient_provider")

    async def fetch_shares(self) -> List[RecipientShare]:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    select(RecipientShareRecord.address, RecipientShareRecord.percentage)
                    .order_by(RecipientShareRecord.address)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            self.logger.error("Failed to read recipient shares", error=str(e))
            raise DatabaseError(f"Failed to read recipient shares: {e}") from e

        shares = validate_rows(rows)
        if not shares:
            raise NoRecipientsError(details={"rows": len(rows)})

        self.logger.info("Fetched recipient shares", rows=len(rows), valid=len(shares))
        return shares
