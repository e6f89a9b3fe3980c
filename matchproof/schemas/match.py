"""
Match Record Schema

A MatchRecord is the unit of proof. Once a match is finished its record
is frozen, canonicalized, hashed and anchored. Nothing about it may
change afterwards: any edit produces a different hash and is, by
definition, a different match.

The move sequence is append-only and ordered. Re-ordering moves is a
different match, not the same match "shuffled".
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")
HEX_PATTERN = re.compile(r"^[0-9a-fA-F]*$")

CURRENT_RECORD_VERSION = "1.0.0"


def _validate_utc_timestamp(value: str) -> str:
    """ISO-8601 timestamps must carry an explicit UTC designator."""
    if not isinstance(value, str):
        raise ValueError("timestamp must be an ISO-8601 string")
    if not (value.endswith("Z") or value.endswith("+00:00")):
        raise ValueError(f"timestamp {value!r} must be UTC (Z suffix)")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"timestamp {value!r} is not ISO-8601: {e}") from e
    return value


class PlayerType(str, Enum):
    """Who made the moves."""
    HUMAN = "human"
    AI = "ai"


class GameDescriptor(BaseModel):
    """Which game and which ruleset the match was played under."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    ruleset: str = Field(..., min_length=1)


class Player(BaseModel):
    """A seat in the match."""
    model_config = ConfigDict(frozen=True)

    player_id: str = Field(..., min_length=1)
    type: PlayerType
    public_key: Optional[str] = Field(
        default=None,
        description="Hex-encoded raw Ed25519 public key"
    )

    @field_validator("public_key")
    @classmethod
    def public_key_is_hex(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not HEX_PATTERN.match(v):
            raise ValueError("public_key must be hex encoded")
        return v


class MoveRecord(BaseModel):
    """One move. `index` is its zero-based position in the sequence."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    timestamp: str
    player_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_utc(cls, v: str) -> str:
        return _validate_utc_timestamp(v)


class SignatureRecord(BaseModel):
    """
    An Ed25519 signature over the record's unsigned canonical bytes.

    Every signer signs the same bytes: the record with `signatures=[]`.
    """
    model_config = ConfigDict(frozen=True)

    signature: str = Field(..., description="Hex-encoded 64-byte signature")
    public_key: str = Field(..., description="Hex-encoded 32-byte public key")
    algorithm: str = Field(default="ed25519")
    signed_at: str

    @field_validator("signature", "public_key")
    @classmethod
    def must_be_hex(cls, v: str) -> str:
        if not HEX_PATTERN.match(v):
            raise ValueError("must be hex encoded")
        return v.lower()

    @field_validator("signed_at")
    @classmethod
    def signed_at_is_utc(cls, v: str) -> str:
        return _validate_utc_timestamp(v)


class MatchRecord(BaseModel):
    """
    A finished match.

    to_document() is the exact tree that gets canonicalized and hashed.
    Optional fields that are unset are omitted from it entirely.
    """
    model_config = ConfigDict(frozen=True)

    version: str = Field(default=CURRENT_RECORD_VERSION)
    match_id: str
    game: GameDescriptor
    seed: int
    start_time: str
    end_time: Optional[str] = None
    players: list[Player] = Field(..., min_length=1)
    moves: list[MoveRecord] = Field(default_factory=list)
    signatures: list[SignatureRecord] = Field(default_factory=list)
    outcome: Optional[dict[str, Any]] = Field(
        default=None,
        description="Final state summary, checked by replay verification"
    )

    @field_validator("version")
    @classmethod
    def version_is_semver(cls, v: str) -> str:
        if not SEMVER_PATTERN.match(v):
            raise ValueError(f"version {v!r} must be a semantic version (e.g. 1.0.0)")
        return v

    @field_validator("match_id")
    @classmethod
    def match_id_is_uuid(cls, v: str) -> str:
        try:
            return str(UUID(v)).lower()
        except (ValueError, AttributeError, TypeError) as e:
            raise ValueError(f"match_id {v!r} is not a UUID") from e

    @field_validator("start_time", "end_time")
    @classmethod
    def times_are_utc(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _validate_utc_timestamp(v)

    @model_validator(mode="after")
    def moves_are_contiguous(self) -> "MatchRecord":
        for position, move in enumerate(self.moves):
            if move.index != position:
                raise ValueError(
                    f"move at position {position} has index {move.index}; "
                    "indices must be zero-based and contiguous"
                )
        return self

    def to_document(self) -> dict[str, Any]:
        """The JSON document tree that is canonicalized for hashing."""
        doc = self.model_dump(mode="python")
        for key in ("end_time", "outcome"):
            if doc.get(key) is None:
                doc.pop(key, None)
        for player in doc["players"]:
            if player.get("public_key") is None:
                player.pop("public_key", None)
        return doc

    def unsigned_document(self) -> dict[str, Any]:
        """The document every player signs: identical but with no signatures."""
        doc = self.to_document()
        doc["signatures"] = []
        return doc

    def with_signature(self, signature: SignatureRecord) -> "MatchRecord":
        """Return a copy with one more signature appended."""
        return self.model_copy(update={"signatures": [*self.signatures, signature]})

    @property
    def player_public_keys(self) -> set[str]:
        return {p.public_key.lower() for p in self.players if p.public_key}
