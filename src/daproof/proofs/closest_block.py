# src/daproof/proofs/closest_block.py
from __future__ import annotations

"""Closest-block validation.

The claimed block B must be the block whose timestamp is nearest to the
receipt timestamp T without being after it. Candidates are B-5..B+5; block
timestamps (seconds) are compared in milliseconds against T. Ties go to the
smaller block number.
"""

import logging
from typing import List, Optional, Sequence

from daproof.clients.chain import Block, ChainClient
from daproof.errors import ValidatorError
from daproof.structured_logging import log_event

log = logging.getLogger("daproof.engine")

BLOCK_WINDOW = 5


def candidate_block_numbers(block_number: int, window: int = BLOCK_WINDOW) -> List[int]:
    b = int(block_number)
    return [n for n in range(b - window, b + window + 1) if n >= 0]


def select_closest_block(blocks: Sequence[Block], target_ms: int) -> Optional[Block]:
    """Nearest block not after target_ms, or None if every candidate is after it."""
    t = int(target_ms)
    eligible = [b for b in blocks if b.timestamp_ms <= t]
    if not eligible:
        return None
    return min(eligible, key=lambda b: (abs(b.timestamp_ms - t), b.number))


class BlockSource:
    """Block reads through an optional persistent cache. Blocks never change once read."""

    def __init__(self, chain: ChainClient, cache=None) -> None:
        self._chain = chain
        self._cache = cache

    def get_block(self, number: int, *, use_cache: bool = True) -> Block:
        if use_cache and self._cache is not None:
            hit = self._cache.get_block(number)
            if hit is not None:
                return hit
        block = self._chain.get_block(number)
        if self._cache is not None:
            self._cache.put_block(block)
        return block

    def get_blocks(self, numbers: Sequence[int], *, use_cache: bool = True) -> List[Block]:
        return [self.get_block(n, use_cache=use_cache) for n in numbers]


def validate_chosen_block(
    blocks: BlockSource,
    *,
    block_number: int,
    block_timestamp: int,
    target_ms: int,
    use_cache: bool = True,
) -> Optional[ValidatorError]:
    """Return None if `block_number` is the closest block, else the rejection reason.

    TransientError from the chain client propagates.
    """
    fetched = blocks.get_blocks(candidate_block_numbers(block_number), use_cache=use_cache)

    claimed = next((b for b in fetched if b.number == int(block_number)), None)
    if claimed is None or claimed.timestamp != int(block_timestamp):
        log_event(
            log,
            "block_mismatch",
            level=logging.DEBUG,
            block_number=int(block_number),
            claimed_timestamp=int(block_timestamp),
            chain_timestamp=claimed.timestamp if claimed is not None else None,
        )
        return ValidatorError.BLOCK_MISMATCH

    closest = select_closest_block(fetched, target_ms)
    if closest is None or closest.number != int(block_number):
        log_event(
            log,
            "not_closest_block",
            level=logging.DEBUG,
            block_number=int(block_number),
            closest=closest.number if closest is not None else None,
            target_ms=int(target_ms),
        )
        return ValidatorError.NOT_CLOSEST_BLOCK
    return None
