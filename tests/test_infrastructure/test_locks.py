"""Tests for KeyedLocks."""

from __future__ import annotations

import asyncio

import pytest

from multisig_escrow.infrastructure.locks import KeyedLocks


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:
        locks = KeyedLocks()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("addr"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self) -> None:
        locks = KeyedLocks()
        async with locks.hold("one"):
            async with locks.hold("two"):
                assert locks.is_held("one")
                assert locks.is_held("two")

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self) -> None:
        locks = KeyedLocks()
        async with locks.hold("addr"):
            pass
        assert not locks.is_held("addr")
        assert locks._locks == {}
