"""
Verification Result

The answer to: "Is this the match that was anchored?"

A result is created fresh per verification call and never mutated. Every
check the verifier could run is reported. Tri-state flags are None when
the check did not apply (e.g. merkle_verified for an unbatched match).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class VerificationResult(BaseModel):
    """Complete, itemized verdict for one match."""
    model_config = ConfigDict(frozen=True)

    match_id: str
    match_hash: str = Field(
        ...,
        description="Hash recorded for the match (anchor or manifest); computed hash if none found"
    )
    computed_hash: str
    on_chain_hash: Optional[str] = Field(
        default=None,
        description="sha256 from a direct anchor, or the anchored Merkle root for a batch"
    )
    merkle_verified: Optional[bool] = None
    signatures_verified: Optional[bool] = None
    replay_verified: Optional[bool] = None
    batch_id: Optional[str] = None
    anchor_transaction: Optional[str] = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    is_valid: bool
