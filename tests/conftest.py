from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from observatory.rpc import Block, BlockResponse

CHAIN_ID = "test-1"
VALIDATOR = bytes.fromhex("95E060D07713070FE9822F6C50BD76BCCBF9F17A")
OTHER_VALIDATOR = bytes.fromhex("20EFE186DA91A00AC7F042CD6CB6A1E882C583C7")
GENESIS_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_block(
    height: int,
    time: Optional[datetime] = None,
    signed: Optional[bool] = True,
    chain_id: str = CHAIN_ID,
) -> Block:
    """Build a block whose commit includes VALIDATOR when ``signed`` (no commit when None)."""
    if time is None:
        time = GENESIS_TIME + timedelta(seconds=6 * height)
    if signed is None:
        commit = None
    elif signed:
        commit = [OTHER_VALIDATOR, VALIDATOR, None]
    else:
        commit = [OTHER_VALIDATOR, None, None]
    return Block(chain_id=chain_id, height=height, time=time, last_commit=commit)


def make_response(height: int, block_id: Optional[str] = None, **kwargs) -> BlockResponse:
    return BlockResponse(block_id or f"{height:064X}", make_block(height, **kwargs))


class _RequestRecorder:
    """Stands in for an RpcClient to find out which request was made."""

    def latest_block(self):
        return ("latest", None)

    def block(self, height):
        return ("block", height)


class FakeClientManager:
    """
    Scripted replacement for ClientManager.

    ``latest`` is a list of per-call result lists (the last one repeats).
    ``blocks`` maps a height to per-call result lists in the same way; heights
    without a script fall back to ``block_factory``.
    """

    def __init__(
        self,
        latest: Optional[List[list]] = None,
        blocks: Optional[Dict[int, List[list]]] = None,
        block_factory: Optional[Callable[[int], list]] = None,
    ):
        self.latest = latest or [[]]
        self.blocks = blocks or {}
        self.block_factory = block_factory
        self.calls: List[tuple] = []

    def request(self, fn):
        kind, height = fn(_RequestRecorder())
        self.calls.append((kind, height))
        if kind == "latest":
            return self._next(self.latest)
        if height in self.blocks:
            return self._next(self.blocks[height])
        if self.block_factory is not None:
            return self.block_factory(height)
        return []

    @staticmethod
    def _next(script: List[list]) -> list:
        if len(script) > 1:
            return list(script.pop(0))
        return list(script[0])


class RecordingSleep:
    """Sleep replacement that records durations and never actually waits."""

    def __init__(self, stop_after: Optional[int] = None):
        self.durations: List[float] = []
        self.stop_after = stop_after

    def __call__(self, seconds: float) -> bool:
        self.durations.append(seconds)
        return self.stop_after is not None and len(self.durations) >= self.stop_after


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()
