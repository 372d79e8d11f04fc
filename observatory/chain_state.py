from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Optional

from observatory.rpc import Block


class BlockData:
    """Data about a particular block in the chain."""

    __slots__ = ("id", "block")

    def __init__(self, block_id: str, block: Block):
        self.id = block_id
        self.block = block

    @property
    def height(self) -> int:
        return self.block.height

    @property
    def time(self) -> datetime:
        return self.block.time

    def signed_by(self, validator_addr: bytes) -> Optional[bool]:
        """Whether the block's commit includes the validator, or None without a commit."""
        if self.block.last_commit is None:
            return None
        return any(addr == validator_addr for addr in self.block.last_commit)

    def __repr__(self):
        return f"BlockData(id={self.id!r}, height={self.height})"


class ChainState:
    """
    Chain state tracker.

    Holds a newest-first window of recently imported blocks and derives the
    chain's block cadence and a validator's signing record from it.
    """

    # Number of blocks to retain
    DEFAULT_HISTORY_SIZE = 100

    # Minimum expected consensus time
    MIN_CONSENSUS_TIME = timedelta(seconds=1)

    def __init__(self, chain_id: str, history_size: int = DEFAULT_HISTORY_SIZE):
        self.chain_id = chain_id
        self.history_size = history_size
        self.blocks: Deque[BlockData] = deque()

    def __len__(self):
        return len(self.blocks)

    def clear(self):
        """Clear the current chain state, discarding all known blocks."""
        self.blocks.clear()

    def import_block(self, block_id: str, block: Block) -> bool:
        """
        Import a block into the chain state, returning True if it is new.

        Only the most recent entry is checked for duplicates. Re-importing a
        block seen two or more positions back adds it again; in steady state
        heights only move forward so the front is the only possible match.
        """
        new_block = False

        if not self.blocks or self.blocks[0].id != block_id:
            self.blocks.appendleft(BlockData(block_id, block))
            new_block = True

        while len(self.blocks) > self.history_size:
            self.blocks.pop()

        return new_block

    def latest_block(self) -> Optional[BlockData]:
        """Get the latest block if available."""
        return self.blocks[0] if self.blocks else None

    def consensus_time(self) -> timedelta:
        """Get estimated consensus time (i.e. average block production rate)."""
        consensus_times = []

        for newer, older in zip(self.blocks, list(self.blocks)[1:]):
            delta = newer.time - older.time
            if delta > timedelta(0):
                consensus_times.append(delta)

        if not consensus_times:
            return self.MIN_CONSENSUS_TIME

        return sum(consensus_times, timedelta(0)) / len(consensus_times)

    def next_block_time(self) -> datetime:
        """Get an estimated next block time."""
        latest = self.latest_block()
        last_time = latest.time if latest else datetime.now(timezone.utc)
        return last_time + self.consensus_time()

    def missed_blocks(self, validator_addr: bytes) -> int:
        """Count the blocks whose commit lacks a signature from the given consensus key."""
        return sum(1 for data in self.blocks if data.signed_by(validator_addr) is False)

    def recent_blocks(self, validator_addr: bytes) -> int:
        """Count the blocks whose commit includes a signature from the given consensus key."""
        return sum(1 for data in self.blocks if data.signed_by(validator_addr))
