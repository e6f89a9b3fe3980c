# Canonical schemas
from .match import (
    CURRENT_RECORD_VERSION,
    GameDescriptor,
    MatchRecord,
    MoveRecord,
    Player,
    PlayerType,
    SignatureRecord,
)
from .batch import MANIFEST_VERSION, BatchManifest
from .anchor import AnchorRecord, BatchAnchor, MatchAnchor, parse_anchor_payload
from .verification import VerificationResult

__all__ = [
    "CURRENT_RECORD_VERSION",
    "GameDescriptor",
    "MatchRecord",
    "MoveRecord",
    "Player",
    "PlayerType",
    "SignatureRecord",
    "MANIFEST_VERSION",
    "BatchManifest",
    "AnchorRecord",
    "BatchAnchor",
    "MatchAnchor",
    "parse_anchor_payload",
    "VerificationResult",
]
