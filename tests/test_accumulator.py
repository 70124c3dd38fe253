"""
Test the durable accumulator.
"""

import asyncio
import json
from decimal import Decimal

import pytest

from revenue_distributor.core.exceptions import PersistenceError
from revenue_distributor.services.accumulator import AccumulatorStore, to_amount


def read_record(path):
    return json.loads(path.read_text())


def test_load_missing_file_starts_at_zero(tmp_path):
    store = AccumulatorStore(tmp_path / "accumulated_sol.json")
    assert store.load() == Decimal(0)
    assert store.amount == Decimal(0)


def test_load_corrupt_file_starts_at_zero(tmp_path):
    path = tmp_path / "accumulated_sol.json"
    path.write_text("{not json")
    store = AccumulatorStore(path)
    assert store.load() == Decimal(0)


def test_load_reads_persisted_amount(tmp_path):
    path = tmp_path / "accumulated_sol.json"
    path.write_text(json.dumps({"amount": 1.25}))
    store = AccumulatorStore(path)
    assert store.load() == Decimal("1.25")


def test_to_amount_rounds_down_to_lamports():
    assert to_amount("0.0000000019") == Decimal("0.000000001")
    assert to_amount(0.1) == Decimal("0.1")


@pytest.mark.asyncio
async def test_add_persists_before_returning(tmp_path):
    path = tmp_path / "accumulated_sol.json"
    store = AccumulatorStore(path)
    store.load()

    assert await store.add(Decimal("1.5")) == Decimal("1.5")
    assert await store.add("0.25") == Decimal("1.75")
    assert read_record(path) == {"amount": 1.75}


@pytest.mark.asyncio
async def test_add_rejects_negative_delta(tmp_path):
    store = AccumulatorStore(tmp_path / "accumulated_sol.json")
    with pytest.raises(ValueError):
        await store.add(Decimal("-1"))


@pytest.mark.asyncio
async def test_take_all_returns_amount_and_persists_zero(tmp_path):
    path = tmp_path / "accumulated_sol.json"
    store = AccumulatorStore(path)
    await store.add(Decimal("3"))

    assert await store.take_all() == Decimal("3")
    assert store.amount == Decimal(0)
    assert read_record(path) == {"amount": 0.0}


@pytest.mark.asyncio
async def test_concurrent_adds_and_take_all_lose_nothing(tmp_path):
    store = AccumulatorStore(tmp_path / "accumulated_sol.json")
    taken = []

    async def take():
        taken.append(await store.take_all())

    await asyncio.gather(
        *(store.add(Decimal("0.1")) for _ in range(20)),
        take(),
        *(store.add(Decimal("0.1")) for _ in range(20)),
    )

    assert sum(taken) + store.amount == Decimal("4.0")


@pytest.mark.asyncio
async def test_restore_after_take_all(tmp_path):
    path = tmp_path / "accumulated_sol.json"
    store = AccumulatorStore(path)
    await store.add(Decimal("7"))

    amount = await store.take_all()
    await store.restore(amount)

    assert store.amount == Decimal("7")
    assert read_record(path) == {"amount": 7.0}

    reloaded = AccumulatorStore(path)
    assert reloaded.load() == Decimal("7")


@pytest.mark.asyncio
async def test_restore_keeps_adds_made_during_the_cycle(tmp_path):
    store = AccumulatorStore(tmp_path / "accumulated_sol.json")
    await store.add(Decimal("7"))
    amount = await store.take_all()
    await store.add(Decimal("0.5"))

    await store.restore(amount)
    assert store.amount == Decimal("7.5")


@pytest.mark.asyncio
async def test_failed_write_keeps_new_value_in_memory(tmp_path):
    path = tmp_path / "missing-dir" / "accumulated_sol.json"
    store = AccumulatorStore(path)

    with pytest.raises(PersistenceError):
        await store.add(Decimal("1"))
    assert store.amount == Decimal("1")

    path.parent.mkdir()
    await store.add(Decimal("2"))
    assert read_record(path) == {"amount": 3.0}


@pytest.mark.asyncio
async def test_failed_restore_write_keeps_amount_for_next_cycle(tmp_path, monkeypatch):
    store = AccumulatorStore(tmp_path / "accumulated_sol.json")
    await store.add(Decimal("7"))
    amount = await store.take_all()

    def failing_write(amount):
        raise OSError("No space left on device")

    monkeypatch.setattr(store, "_write_record", failing_write)
    with pytest.raises(PersistenceError):
        await store.restore(amount)
    assert store.amount == Decimal("7")

    monkeypatch.undo()
    assert await store.take_all() == Decimal("7")
