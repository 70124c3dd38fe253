"""
Durable accumulator for SOL earned but not yet distributed.

The balance lives in memory and in a single JSON record ({"amount": <number>})
that is rewritten on every mutation. All mutations go through one lock, so a
take_all() never loses or double-counts an add() that completed before it.
"""

import asyncio
import json
import os
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from pathlib import Path
from typing import Union

import structlog

from revenue_distributor.core.exceptions import PersistenceError


logger = structlog.get_logger(__name__)

LAMPORT_QUANTUM = Decimal("0.000000001")

Amount = Union[Decimal, int, float, str]


def to_amount(value: Amount) -> Decimal:
    """Normalize a SOL amount to lamport precision, rounding down."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(LAMPORT_QUANTUM, rounding=ROUND_DOWN)


class AccumulatorStore:
    """File-backed running total of SOL awaiting distribution."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._amount = Decimal(0)
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="accumulator", path=str(self.path))

    @property
    def amount(self) -> Decimal:
        return self._amount

    def load(self) -> Decimal:
        """Seed the in-memory value from the persisted record; absent or corrupt reads as 0."""
        amount = Decimal(0)
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                amount = to_amount(data.get("amount") or 0)
                if amount < 0:
                    raise ValueError(f"negative amount {amount}")
            except (OSError, ValueError, TypeError, AttributeError, InvalidOperation) as e:
                self.logger.error("Error loading accumulated amount, starting from 0", error=str(e))
                amount = Decimal(0)

        self._amount = amount
        self.logger.info("Loaded accumulated SOL amount", amount=str(amount))
        return amount

    async def add(self, delta: Amount) -> Decimal:
        """
        Increase the balance and persist it before returning.

        If the write fails the new balance is kept in memory and
        PersistenceError is raised; the next successful write carries it.
        """
        delta = to_amount(delta)
        if delta < 0:
            raise ValueError(f"Cannot add a negative amount: {delta}")

        async with self._lock:
            self._amount += delta
            await self._persist(self._amount)
            return self._amount

    async def take_all(self) -> Decimal:
        """Hand the whole balance to a distribution cycle, leaving 0 behind."""
        async with self._lock:
            taken = self._amount
            await self._persist(Decimal(0))
            self._amount = Decimal(0)
            return taken

    async def restore(self, amount: Amount) -> Decimal:
        """
        Give back an amount taken by a cycle that failed before paying out.

        Like add(), a failed write keeps the restored balance in memory so
        the next cycle still takes it.
        """
        amount = to_amount(amount)
        if amount < 0:
            raise ValueError(f"Cannot restore a negative amount: {amount}")

        async with self._lock:
            self._amount += amount
            self.logger.warning("Restored undistributed amount", restored=str(amount), total=str(self._amount))
            await self._persist(self._amount)
            return self._amount

    async def _persist(self, amount: Decimal) -> None:
        try:
            await asyncio.to_thread(self._write_record, amount)
        except OSError as e:
            self.logger.error("Error saving accumulated amount", amount=str(amount), error=str(e))
            raise PersistenceError(
                f"Failed to persist accumulated amount: {e}",
                {"path": str(self.path), "amount": str(amount)}
            ) from e

    def _write_record(self, amount: Decimal) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps({"amount": float(amount)}, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)
