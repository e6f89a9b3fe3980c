"""
Batch Manifest Schema

A manifest records which match hashes were combined into one Merkle
tree and anchored together. It is written once to the object store
under `manifests/{batch_id}.json` and never rewritten.

match_ids and match_hashes are parallel lists in Merkle leaf order.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


MANIFEST_VERSION = "1.0.0"


class BatchManifest(BaseModel):
    """Persisted record of one flushed batch."""
    model_config = ConfigDict(frozen=True)

    version: str = Field(default=MANIFEST_VERSION)
    batch_id: str = Field(..., min_length=1)
    match_ids: list[str]
    match_hashes: list[str]
    merkle_root: str = Field(..., min_length=64, max_length=64)
    match_count: int = Field(..., ge=1)
    created_at: str

    # Populated when the root was anchored before the manifest was written
    anchor_txid: Optional[str] = None
    anchored_at: Optional[str] = None

    # Coordinator signature over signing_bytes()
    signature: Optional[str] = None
    signer_public_key: Optional[str] = None

    @field_validator("match_hashes")
    @classmethod
    def hashes_are_lowercase_hex(cls, v: list[str]) -> list[str]:
        for h in v:
            if len(h) != 64 or any(c not in "0123456789abcdef" for c in h.lower()):
                raise ValueError(f"invalid match hash: {h!r}")
        return [h.lower() for h in v]

    @model_validator(mode="after")
    def lists_are_parallel(self) -> "BatchManifest":
        if not (len(self.match_ids) == len(self.match_hashes) == self.match_count):
            raise ValueError(
                f"match_ids ({len(self.match_ids)}), match_hashes "
                f"({len(self.match_hashes)}) and match_count ({self.match_count}) "
                "must agree"
            )
        return self

    def to_document(self) -> dict[str, Any]:
        """Manifest as stored, unset optional fields omitted."""
        return self.model_dump(mode="python", exclude_none=True)

    def signing_document(self) -> dict[str, Any]:
        """The fields covered by the coordinator signature."""
        return {
            "version": self.version,
            "batch_id": self.batch_id,
            "match_ids": list(self.match_ids),
            "match_hashes": list(self.match_hashes),
            "merkle_root": self.merkle_root,
            "match_count": self.match_count,
            "created_at": self.created_at,
        }

    def hash_for(self, match_id: str) -> Optional[str]:
        """Recorded hash for a match, or None if it is not in this batch."""
        try:
            return self.match_hashes[self.match_ids.index(match_id)]
        except ValueError:
            return None
