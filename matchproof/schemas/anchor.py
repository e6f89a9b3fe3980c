"""
On-ledger Anchor Records

What actually gets written to the public ledger. Two shapes:

- MatchAnchor: one match, `{match_id, sha256, hot_url?, signers?}`
- BatchAnchor: one Merkle root, `{batch_id, merkle_root, match_count}`

`hot_url` and `signers` are advisory hints. Verification only ever needs
`match_id` and `sha256`, so they may be dropped to fit the payload limit.
"""

import json
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class MatchAnchor(BaseModel):
    """Anchor for a single match hash."""
    model_config = ConfigDict(frozen=True)

    match_id: str = Field(..., min_length=1)
    sha256: str = Field(..., min_length=64, max_length=64)
    hot_url: Optional[str] = None
    signers: Optional[list[str]] = None

    @property
    def identifier(self) -> str:
        return self.match_id


class BatchAnchor(BaseModel):
    """Anchor for a batch Merkle root."""
    model_config = ConfigDict(frozen=True)

    batch_id: str = Field(..., min_length=1)
    merkle_root: str = Field(..., min_length=64, max_length=64)
    match_count: int = Field(..., ge=1)

    @property
    def identifier(self) -> str:
        return self.batch_id


AnchorRecord = Union[MatchAnchor, BatchAnchor]


def parse_anchor_payload(payload: bytes | str) -> Optional[AnchorRecord]:
    """
    Interpret raw ledger payload bytes as an anchor.

    Returns None for anything that is not one of our anchor shapes
    (other programs write to the same ledger).
    """
    try:
        data = json.loads(payload)
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        if "batch_id" in data:
            return BatchAnchor.model_validate(data)
        if "match_id" in data:
            return MatchAnchor.model_validate(data)
    except ValidationError:
        return None
    return None
