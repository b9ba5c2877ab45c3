"""Rank progression engine.

Draws the weighted outcome of a rank-up attempt and produces the updated
attribute list.
"""

import random
from typing import Callable, Optional, Sequence

from ..errors import InvalidRank
from ..logging_utils import get_logger
from ..models import MetadataAttribute
from .ranks import RankTable

logger = get_logger(__name__)

DRAW_MIN = 1
DRAW_MAX = 99

_system_random = random.SystemRandom()


def draw_uniform() -> int:
    """Uniform integer in [1, 99]."""
    return _system_random.randint(DRAW_MIN, DRAW_MAX)


class ProgressionEngine:
    """Advances the rank held in the first attribute slot.

    Only the first slot is ever rewritten; everything after it is passed
    through untouched. The slot must hold the ``Rank`` trait.
    """

    def __init__(self, rank_table: RankTable, draw: Optional[Callable[[], int]] = None):
        self.rank_table = rank_table
        self.draw = draw or draw_uniform

    def advance(self, attributes: Sequence[MetadataAttribute]) -> tuple[list[MetadataAttribute], bool]:
        """Roll a rank-up.

        Args:
            attributes: Attribute list of the token's metadata document.

        Returns:
            The new attribute list and whether the rank advanced.

        Raises:
            InvalidRank: If the first slot is not a known rank.
        """
        if not attributes or attributes[0].trait_type != "Rank":
            raise InvalidRank("First metadata attribute is not the Rank trait")

        current = attributes[0].value
        entry = self.rank_table.entry(current)

        if self.rank_table.is_terminal(current):
            logger.info(f"{current} is the terminal rank, nothing to advance")
            return [attribute.model_copy() for attribute in attributes], False

        roll = self.draw()
        succeeded = roll >= entry.threshold
        new_rank = entry.next_rank if succeeded else current
        logger.info(
            f"Rank roll {roll} against threshold {entry.threshold}: "
            f"{current} -> {new_rank} ({'advanced' if succeeded else 'unchanged'})"
        )

        updated = [attribute.model_copy() for attribute in attributes]
        updated[0] = MetadataAttribute(trait_type="Rank", value=new_rank)
        return updated, succeeded
