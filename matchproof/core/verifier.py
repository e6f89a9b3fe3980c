"""
Match Verifier

The answer to a skeptical third party: "Is this the match that was played?"

CHECKS (every check that can run, runs; nothing aborts early):
1. Structure: schema, match_id, contiguous move indices, ordered timestamps
2. Hash: canonicalize the record as stored by upload (the schema-normalized
   document, or the raw document when it fails the schema) and SHA-256 it
3. Anchor, direct: computed hash equals the on-chain sha256
   Anchor, batched: manifest lists the hash, manifest is intact and
   signed, the anchored root matches, and a Merkle proof of the
   COMPUTED hash re-derives the anchored root
4. Signatures: each embedded signature verifies over the unsigned record
5. Replay: the rules engine reaches the recorded outcome from the seed

Failed checks append errors. Checks that could not run append warnings.
is_valid is True only when there are no errors.

Ledger and store failures never escape: they become errors in the report.
"""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from ..ledger.base import LedgerClient
from ..schemas.anchor import AnchorRecord, BatchAnchor, MatchAnchor
from ..schemas.batch import BatchManifest
from ..schemas.match import MatchRecord
from ..schemas.verification import VerificationResult
from ..storage.store import ObjectStore, batch_index_key, manifest_key, match_key
from .canonical import canonicalize
from ..errors import CanonicalizationError
from .hasher import Hasher
from .merkle import MerkleProof, MerkleTree, hash_leaf
from .replay import ReplayError, RulesEngine
from .signer import Signer

logger = logging.getLogger(__name__)


@dataclass
class _Report:
    """Mutable accumulator; frozen into a VerificationResult at the end."""
    match_id: str
    computed_hash: str = ""
    match_hash: Optional[str] = None
    on_chain_hash: Optional[str] = None
    merkle_verified: Optional[bool] = None
    signatures_verified: Optional[bool] = None
    replay_verified: Optional[bool] = None
    batch_id: Optional[str] = None
    anchor_transaction: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def error(self, msg: str) -> None:
        self.errors.append(msg)

    def warn(self, msg: str) -> None:
        self.warnings.append(msg)

    def freeze(self) -> VerificationResult:
        return VerificationResult(
            match_id=self.match_id,
            match_hash=self.match_hash or self.computed_hash,
            computed_hash=self.computed_hash,
            on_chain_hash=self.on_chain_hash,
            merkle_verified=self.merkle_verified,
            signatures_verified=self.signatures_verified,
            replay_verified=self.replay_verified,
            batch_id=self.batch_id,
            anchor_transaction=self.anchor_transaction,
            errors=list(self.errors),
            warnings=list(self.warnings),
            is_valid=not self.errors,
        )


def _short(h: Optional[str]) -> str:
    return f"{h[:16]}..." if h else "none"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class MatchVerifier:
    """
    Reconciles a match record with its on-chain anchor.

    Args:
        ledger: Where anchors live
        store: Where manifests and batch pointers live (needed for batched matches)
        rules_engine: Optional replay collaborator
        trusted_manifest_keys: Coordinator public keys whose manifest
            signatures are trusted. Empty means any valid signature is accepted
            (with a warning).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: Optional[ObjectStore] = None,
        rules_engine: Optional[RulesEngine] = None,
        trusted_manifest_keys: Optional[set[str]] = None,
    ):
        self.ledger = ledger
        self.store = store
        self.rules_engine = rules_engine
        self.trusted_manifest_keys = {k.lower() for k in (trusted_manifest_keys or set())}

    async def load_record(self, match_id: str) -> Optional[dict]:
        """
        Fetch a stored record from the object store.

        Raises:
            StorageError: If the store fails
            ValueError: If the stored bytes are not a JSON object
        """
        if self.store is None:
            return None
        raw = await self.store.get(match_key(match_id.strip().lower()))
        if raw is None:
            return None
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Stored record for {match_id} is not a JSON object")
        return data

    async def verify_match(
        self,
        match_id: str,
        record: Any,
        anchor_transaction: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify one match record.

        Args:
            match_id: The match the caller claims this is
            record: MatchRecord or parsed JSON document
            anchor_transaction: Transaction id hint (skips the ledger scan)
            batch_id: Batch hint (skips the batch pointer lookup)
        """
        match_id = match_id.strip().lower()
        report = _Report(match_id=match_id)

        document, model = self._check_structure(report, match_id, record)
        if document is None:
            return report.freeze()

        # Upload anchors the normalized document; only an invalid record is hashed raw
        hashed = model.to_document() if model is not None else document
        try:
            report.computed_hash = Hasher.hash_bytes(canonicalize(hashed))
        except CanonicalizationError as e:
            report.error(f"Record cannot be canonicalized: {e}")
            return report.freeze()
        if model is not None:
            ignored = sorted(str(key) for key in set(document) - set(MatchRecord.model_fields))
            if ignored:
                report.warn(f"Fields outside the match schema are not covered by the hash: {', '.join(ignored)}")

        if batch_id is None and anchor_transaction is None:
            batch_id = await self._lookup_batch(report, match_id)

        if batch_id is not None:
            await self._verify_batched(report, match_id, batch_id, anchor_transaction)
        else:
            await self._verify_direct(report, match_id, anchor_transaction)

        self._verify_signatures(report, model, document)
        await self._verify_replay(report, model)

        result = report.freeze()
        logger.info(
            f"Verified match {match_id}: {'VALID' if result.is_valid else 'INVALID'} "
            f"({len(result.errors)} errors, {len(result.warnings)} warnings)"
        )
        return result

    # ------------------------------------------------------------
    # 1. Structure
    # ------------------------------------------------------------

    def _check_structure(
        self, report: _Report, match_id: str, record: Any
    ) -> tuple[Optional[dict], Optional[MatchRecord]]:
        if isinstance(record, MatchRecord):
            document, model = record.to_document(), record
        elif isinstance(record, Mapping):
            document = dict(record)
            try:
                model = MatchRecord.model_validate(document)
            except ValidationError as e:
                model = None
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                    for err in e.errors()[:5]
                )
                report.error(f"Record does not match the match schema: {problems}")
        else:
            report.error(f"Record must be a JSON object, got {type(record).__name__}")
            return None, None

        recorded_id = document.get("match_id")
        if not isinstance(recorded_id, str) or recorded_id.lower() != match_id.lower():
            report.error(f"Record match_id {recorded_id!r} does not match {match_id!r}")

        moves = document.get("moves")
        if isinstance(moves, list):
            self._check_moves(report, moves, check_indices=model is None)
        return document, model

    @staticmethod
    def _check_moves(report: _Report, moves: list, check_indices: bool) -> None:
        previous: Optional[datetime] = None
        for position, move in enumerate(moves):
            if not isinstance(move, Mapping):
                report.error(f"Move {position} is not an object")
                continue
            if check_indices and move.get("index") != position:
                report.error(
                    f"Move at position {position} has index {move.get('index')!r}; "
                    "moves must be contiguous from 0"
                )
            ts = _parse_timestamp(move.get("timestamp"))
            if ts is None:
                continue
            if previous is not None and ts < previous:
                report.error(f"Move {position} timestamp goes backwards")
            previous = ts

    # ------------------------------------------------------------
    # 2-3. Anchors
    # ------------------------------------------------------------

    async def _lookup_batch(self, report: _Report, match_id: str) -> Optional[str]:
        if self.store is None:
            return None
        try:
            raw = await self.store.get(batch_index_key(match_id))
        except Exception as e:
            report.warn(f"Batch pointer lookup failed, trying direct anchor: {e}")
            return None
        return raw.decode("utf-8").strip() if raw else None

    async def _fetch_anchor(
        self, report: _Report, identifier: str, transaction_id: Optional[str]
    ) -> Optional[AnchorRecord]:
        try:
            if transaction_id:
                anchor = await self.ledger.get_anchor_by_transaction(transaction_id)
                if anchor is None:
                    report.error(f"Transaction {transaction_id} carries no anchor")
                    return None
                report.anchor_transaction = transaction_id
                return anchor
            located = await self.ledger.find_anchor(identifier)
        except Exception as e:
            report.error(f"Ledger lookup failed: {e}")
            return None
        if located is None:
            report.error(f"No on-chain anchor found for {identifier}")
            return None
        report.anchor_transaction = located.transaction_id
        return located.anchor

    async def _verify_direct(
        self, report: _Report, match_id: str, anchor_transaction: Optional[str]
    ) -> None:
        anchor = await self._fetch_anchor(report, match_id, anchor_transaction)
        if anchor is None:
            return

        if isinstance(anchor, BatchAnchor):
            # A batch transaction was given as the hint; switch to the batch path
            await self._verify_batched(report, match_id, anchor.batch_id, anchor_transaction)
            return

        if anchor.match_id.lower() != match_id.lower():
            report.error(f"Anchor is for match {anchor.match_id}, not {match_id}")
        report.on_chain_hash = anchor.sha256
        report.match_hash = anchor.sha256
        if not Hasher.constant_time_compare(report.computed_hash, anchor.sha256):
            report.error(
                f"Hash mismatch: computed {_short(report.computed_hash)}, "
                f"anchored {_short(anchor.sha256)}"
            )

    async def _load_manifest(self, report: _Report, batch_id: str) -> Optional[BatchManifest]:
        if self.store is None:
            report.error(f"Match belongs to batch {batch_id} but no object store is configured")
            return None
        try:
            raw = await self.store.get(manifest_key(batch_id))
        except Exception as e:
            report.error(f"Failed to fetch manifest for batch {batch_id}: {e}")
            return None
        if raw is None:
            report.error(f"Batch manifest {batch_id} not found")
            return None
        try:
            return BatchManifest.model_validate_json(raw)
        except ValidationError as e:
            report.error(f"Batch manifest {batch_id} is malformed: {e.error_count()} problem(s)")
            return None

    def _check_manifest_signature(self, report: _Report, manifest: BatchManifest) -> None:
        if not manifest.signature or not manifest.signer_public_key:
            report.warn(f"Batch manifest {manifest.batch_id} is unsigned")
            return
        message = canonicalize(manifest.signing_document())
        if not Signer.verify_raw(message, manifest.signature, manifest.signer_public_key):
            report.error(f"Batch manifest {manifest.batch_id} signature is invalid")
            return
        if not self.trusted_manifest_keys:
            report.warn("Manifest signature valid but no trusted coordinator key configured")
        elif manifest.signer_public_key.lower() not in self.trusted_manifest_keys:
            report.error(
                f"Batch manifest signed by untrusted key {_short(manifest.signer_public_key)}"
            )

    async def _verify_batched(
        self,
        report: _Report,
        match_id: str,
        batch_id: str,
        anchor_transaction: Optional[str],
    ) -> None:
        report.batch_id = batch_id
        manifest = await self._load_manifest(report, batch_id)
        if manifest is None:
            report.merkle_verified = False
            return

        try:
            index = manifest.match_ids.index(match_id)
        except ValueError:
            report.error(f"Match {match_id} is not listed in batch {batch_id}")
            report.merkle_verified = False
            return

        recorded = manifest.match_hashes[index]
        report.match_hash = recorded
        if not Hasher.constant_time_compare(report.computed_hash, recorded):
            report.error(
                f"Hash mismatch: computed {_short(report.computed_hash)}, "
                f"manifest records {_short(recorded)}"
            )

        self._check_manifest_signature(report, manifest)

        tree = MerkleTree(manifest.match_hashes)
        if tree.root != manifest.merkle_root:
            report.error("Manifest merkle_root does not match its own hashes")

        anchor = await self._fetch_anchor(
            report, batch_id, anchor_transaction or manifest.anchor_txid
        )
        anchored_root: Optional[str] = None
        if isinstance(anchor, MatchAnchor):
            report.error(f"Anchor transaction carries match {anchor.match_id}, not batch {batch_id}")
        elif isinstance(anchor, BatchAnchor):
            if anchor.batch_id != batch_id:
                report.error(f"Anchor is for batch {anchor.batch_id}, not {batch_id}")
            else:
                anchored_root = anchor.merkle_root
                report.on_chain_hash = anchor.merkle_root
                if anchor.merkle_root != manifest.merkle_root:
                    report.error(
                        f"Anchored root {_short(anchor.merkle_root)} differs from "
                        f"manifest root {_short(manifest.merkle_root)}"
                    )
                if anchor.match_count != manifest.match_count:
                    report.error(
                        f"Anchored match_count {anchor.match_count} differs from "
                        f"manifest match_count {manifest.match_count}"
                    )

        if anchored_root is None:
            report.merkle_verified = False
            return

        # Sibling path from the manifest, leaf from the record we were handed
        path = tree.generate_proof(match_id, recorded, index=index)
        proof = MerkleProof(
            match_id=match_id,
            sha256=report.computed_hash,
            leaf_hash=hash_leaf(report.computed_hash).hex(),
            index=index,
            siblings=path.siblings,
            directions=path.directions,
        )
        report.merkle_verified = MerkleTree.verify_proof(proof, anchored_root)
        if not report.merkle_verified:
            report.error("Merkle inclusion proof does not reach the anchored root")

    # ------------------------------------------------------------
    # 4. Signatures
    # ------------------------------------------------------------

    def _verify_signatures(
        self, report: _Report, model: Optional[MatchRecord], document: dict
    ) -> None:
        if model is None:
            if document.get("signatures"):
                report.warn("Signatures not checked: record failed schema validation")
            return
        if not model.signatures:
            report.warn("No signatures present")
            return

        unsigned = canonicalize(model.unsigned_document())
        player_keys = model.player_public_keys
        all_valid = True
        for i, signature in enumerate(model.signatures):
            if not Signer.verify(unsigned, signature):
                report.error(f"Signature {i} by {_short(signature.public_key)} is invalid")
                all_valid = False
            elif player_keys and signature.public_key.lower() not in player_keys:
                report.warn(f"Signature {i} key {_short(signature.public_key)} is not a player key")
        report.signatures_verified = all_valid

    # ------------------------------------------------------------
    # 5. Replay
    # ------------------------------------------------------------

    async def _verify_replay(self, report: _Report, model: Optional[MatchRecord]) -> None:
        if self.rules_engine is None:
            report.warn("Replay not performed: no rules engine configured")
            return
        if model is None:
            report.warn("Replay not performed: record failed schema validation")
            return

        try:
            final_state = await self.rules_engine.replay(model.seed, model.moves)
        except ReplayError as e:
            report.error(f"Replay failed: {e}")
            report.replay_verified = False
            return
        except Exception as e:
            report.warn(f"Replay not performed: rules engine error: {e}")
            return

        if model.outcome is None:
            report.warn("Moves replay cleanly but the record has no outcome to compare")
            report.replay_verified = True
            return

        if not isinstance(final_state, Mapping):
            report.warn(
                f"Replay not compared: rules engine returned {type(final_state).__name__}, not a mapping"
            )
            return

        replayed = {key: final_state.get(key) for key in model.outcome}
        try:
            matches = canonicalize(replayed) == canonicalize(model.outcome)
        except CanonicalizationError as e:
            report.error(f"Replayed outcome cannot be canonicalized: {e}")
            report.replay_verified = False
            return
        report.replay_verified = matches
        if not matches:
            report.error("Recorded outcome does not match the replayed outcome")
