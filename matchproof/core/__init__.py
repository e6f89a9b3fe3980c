# Core integrity services
from ..errors import (
    MatchProofError,
    CanonicalizationError,
    KeyFormatError,
    PayloadTooLargeError,
    StorageError,
    TransportError,
    TransientTransportError,
    PermanentTransportError,
    CircuitOpenError,
    ErrorCode,
    ErrorDetails,
    classify_error,
)
from .canonical import canonicalize, canonicalize_to_str, canonicalize_match_record
from .hasher import Hasher
from .signer import KeyManager, KeyPair, Signer
from .signing_service import SigningService, get_signing_service
from .merkle import MerkleTree, MerkleProof, build_tree, generate_proof, verify_proof
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .transaction_handler import (
    TransactionHandler,
    TransactionConfig,
    TransactionProgress,
    TransactionResult,
    TransactionStage,
)
from .anchor import (
    AnchorService,
    AnchorReceipt,
    MAX_ANCHOR_PAYLOAD_BYTES,
    build_match_payload,
    build_batch_payload,
)
from .batch_manager import BatchManager, BatchConfig, BatchState
from .replay import ReplayError, RulesEngine
from .verifier import MatchVerifier

__all__ = [
    "MatchProofError",
    "CanonicalizationError",
    "KeyFormatError",
    "PayloadTooLargeError",
    "StorageError",
    "TransportError",
    "TransientTransportError",
    "PermanentTransportError",
    "CircuitOpenError",
    "ErrorCode",
    "ErrorDetails",
    "classify_error",
    "canonicalize",
    "canonicalize_to_str",
    "canonicalize_match_record",
    "Hasher",
    "KeyManager",
    "KeyPair",
    "Signer",
    "SigningService",
    "get_signing_service",
    "MerkleTree",
    "MerkleProof",
    "build_tree",
    "generate_proof",
    "verify_proof",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "TransactionHandler",
    "TransactionConfig",
    "TransactionProgress",
    "TransactionResult",
    "TransactionStage",
    "AnchorService",
    "AnchorReceipt",
    "MAX_ANCHOR_PAYLOAD_BYTES",
    "build_match_payload",
    "build_batch_payload",
    "BatchManager",
    "BatchConfig",
    "BatchState",
    "ReplayError",
    "RulesEngine",
    "MatchVerifier",
]
