"""
Replay Interface

The game rules engine lives outside the integrity core. The verifier
only needs one capability from it: replay a seed and a move list and
report the final state, or say the moves are illegal.
"""

from typing import Any, Mapping, Protocol, Sequence

from ..schemas.match import MoveRecord
from ..errors import MatchProofError


class ReplayError(MatchProofError):
    """The recorded moves are not a legal game from the recorded seed."""
    pass


class RulesEngine(Protocol):
    """What the verifier needs from a rules engine."""

    async def replay(self, seed: int, moves: Sequence[MoveRecord]) -> Mapping[str, Any]:
        """
        Replay the match.

        Returns:
            Final state. Compared against the record's `outcome` when present.

        Raises:
            ReplayError: If any move is illegal
        """
        ...
