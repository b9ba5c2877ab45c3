"""Rank table: price, advancement threshold and successor for every rank.

Labels in ``LADDER`` are the ones written back into metadata. A successful
advance from Jounin writes ``Special Jounin`` (with a space); the hyphenated
and ``Jonin`` spellings found in minted tokens are read through
``RANK_ALIASES``, and an advance never produces them.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

from ..config import config
from ..errors import InvalidRank

LADDER = ("Academy", "Genin", "Chuunin", "Jounin", "Special Jounin", "Kage")
TERMINAL_RANK = LADDER[-1]

# Spellings found in already-minted metadata
RANK_ALIASES = {
    "Jonin": "Jounin",
    "Special Jonin": "Special Jounin",
    "Special-Jounin": "Special Jounin",
}


@dataclass(frozen=True)
class RankEntry:
    rank: str
    price: int
    threshold: int
    next_rank: str


def normalize_rank(label: str) -> str:
    return RANK_ALIASES.get(label, label)


class RankTable:
    """Static per-deployment rank configuration.

    Prices and thresholds vary between deployments; the ladder order and the
    terminal rank do not.
    """

    def __init__(
        self,
        prices: Optional[Mapping[str, int]] = None,
        thresholds: Optional[Mapping[str, int]] = None,
        terminal_policy: Optional[str] = None,
    ):
        prices = dict(prices if prices is not None else config.rank_prices)
        thresholds = dict(thresholds if thresholds is not None else config.rank_thresholds)
        self.terminal_policy = terminal_policy or config.terminal_rank_policy

        self._entries: dict[str, RankEntry] = {}
        for index, rank in enumerate(LADDER):
            if rank == TERMINAL_RANK and self.terminal_policy != "self":
                continue
            if rank not in prices or rank not in thresholds:
                raise ValueError(f"Rank table is missing price or threshold for {rank}")
            threshold = thresholds[rank]
            if not 1 <= threshold <= 100:
                raise ValueError(f"Threshold for {rank} must be within 1..100, got {threshold}")
            next_rank = LADDER[index + 1] if rank != TERMINAL_RANK else TERMINAL_RANK
            self._entries[rank] = RankEntry(rank, prices[rank], threshold, next_rank)

    def entry(self, rank: str) -> RankEntry:
        """Look up a rank label.

        Raises:
            InvalidRank: If the label is unknown, or terminal under the reject policy.
        """
        entry = self._entries.get(normalize_rank(rank))
        if entry is None:
            raise InvalidRank(f"Not a valid rank to use for rankup: {rank!r}")
        return entry

    def price_for(self, rank: str) -> int:
        return self.entry(rank).price

    def next_rank(self, rank: str) -> str:
        return self.entry(rank).next_rank

    def is_terminal(self, rank: str) -> bool:
        return normalize_rank(rank) == TERMINAL_RANK

    def __contains__(self, rank: str) -> bool:
        return normalize_rank(rank) in self._entries
