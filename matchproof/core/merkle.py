"""
Merkle Tree Batching

Many match hashes → one root → one anchoring transaction.

KEY CAPABILITY:
    "Given match_id, prove it is in batch X"

TREE-SHAPE CONTRACT (every verifier must reproduce this exactly):
1. Leaf order is the input order, fixed at construction
2. Leaf hash  = SHA256(0x00 || raw 32 bytes of the match hash)
3. Node hash  = SHA256(0x01 || left || right)
4. An odd node at the end of any level is paired with ITSELF:
   parent = SHA256(0x01 || node || node). Nothing is carried up unhashed.
5. A single-leaf tree's root is that leaf's hash

The 0x00/0x01 prefixes keep a leaf from ever being confused with an
internal node (second-preimage protection).

Proofs record every sibling on the path, including the self-sibling from
rule 4, plus which side it sits on. Verification is O(log n).
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Optional

from .hasher import Hasher


LEAF_PREFIX = b"\x00"
NODE_PREFIX = b"\x01"

LEFT = "left"
RIGHT = "right"


def hash_leaf(match_hash: str) -> bytes:
    """Leaf node for a 64-hex match hash."""
    return hashlib.sha256(LEAF_PREFIX + bytes.fromhex(match_hash)).digest()


def hash_node(left: bytes, right: bytes) -> bytes:
    """Internal node from two children."""
    return hashlib.sha256(NODE_PREFIX + left + right).digest()


@dataclass
class MerkleProof:
    """
    Proof that a match hash is a leaf of a specific Merkle root.

    Self-contained: anyone holding the proof and the anchored root can
    check it without seeing any other match.
    """
    match_id: str
    sha256: str                 # the match hash (leaf input)
    leaf_hash: str              # hash_leaf(sha256), hex
    index: int                  # leaf position
    siblings: list[str] = field(default_factory=list)
    directions: list[str] = field(default_factory=list)  # side of each sibling

    def to_dict(self) -> dict:
        return {
            "match_id": self.match_id,
            "sha256": self.sha256,
            "leaf_hash": self.leaf_hash,
            "index": self.index,
            "siblings": list(self.siblings),
            "directions": list(self.directions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MerkleProof":
        return cls(
            match_id=data["match_id"],
            sha256=data["sha256"],
            leaf_hash=data["leaf_hash"],
            index=int(data["index"]),
            siblings=list(data["siblings"]),
            directions=list(data["directions"]),
        )


class MerkleTree:
    """
    Binary Merkle tree over an ordered list of match hashes.

    All levels are kept so proofs are a walk up the stored levels,
    not a rebuild.
    """

    def __init__(self, hashes: list[str]):
        """
        Build a tree.

        Raises:
            ValueError: If hashes is empty or contains a non-hex hash
        """
        if not hashes:
            raise ValueError("Cannot create Merkle tree with no hashes")

        normalized = []
        for i, h in enumerate(hashes):
            h = h.lower() if isinstance(h, str) else h
            if not Hasher.is_valid_hash(h):
                raise ValueError(f"Leaf {i} is not a 64-character hex hash: {h!r}")
            normalized.append(h)

        self._leaves = normalized
        self._levels: list[list[bytes]] = [[hash_leaf(h) for h in normalized]]

        level = self._levels[0]
        while len(level) > 1:
            next_level = []
            for i in range(0, len(level), 2):
                left = level[i]
                right = level[i + 1] if i + 1 < len(level) else left
                next_level.append(hash_node(left, right))
            self._levels.append(next_level)
            level = next_level

    @classmethod
    def build(cls, hashes: list[str]) -> "MerkleTree":
        return cls(hashes)

    @property
    def root(self) -> str:
        """Merkle root, lowercase hex."""
        return self._levels[-1][0].hex()

    @property
    def leaves(self) -> list[str]:
        return list(self._leaves)

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    @property
    def depth(self) -> int:
        """Number of hashing levels above the leaves."""
        return len(self._levels) - 1

    def index_of(self, match_hash: str) -> Optional[int]:
        """First leaf position holding this hash, or None."""
        try:
            return self._leaves.index(match_hash.lower())
        except ValueError:
            return None

    def generate_proof(
        self,
        match_id: str,
        match_hash: str,
        index: Optional[int] = None,
    ) -> MerkleProof:
        """
        Inclusion proof for one leaf.

        Args:
            match_id: Carried in the proof for the reader's benefit
            match_hash: The leaf's match hash
            index: Leaf position; looked up by hash when omitted. Pass it
                when the same hash could appear twice in a batch.

        Raises:
            KeyError: If the hash is not a leaf of this tree
            ValueError: If index does not hold match_hash
        """
        match_hash = match_hash.lower()
        if index is None:
            index = self.index_of(match_hash)
            if index is None:
                raise KeyError(f"Hash {match_hash[:16]}... is not in this tree")
        elif not 0 <= index < len(self._leaves) or self._leaves[index] != match_hash:
            raise ValueError(f"Leaf {index} does not hold hash {match_hash[:16]}...")

        siblings: list[str] = []
        directions: list[str] = []
        position = index
        for level in self._levels[:-1]:
            if position % 2 == 1:
                siblings.append(level[position - 1].hex())
                directions.append(LEFT)
            else:
                # Odd tail pairs with itself
                sibling = level[position + 1] if position + 1 < len(level) else level[position]
                siblings.append(sibling.hex())
                directions.append(RIGHT)
            position //= 2

        return MerkleProof(
            match_id=match_id,
            sha256=match_hash,
            leaf_hash=self._levels[0][index].hex(),
            index=index,
            siblings=siblings,
            directions=directions,
        )

    @staticmethod
    def verify_proof(proof: MerkleProof, root: str) -> bool:
        """
        Re-derive the root from a proof and compare.

        The sibling side recorded in the proof must agree with the leaf
        index at every level; a proof that lies about either is rejected.
        Never raises on malformed input.
        """
        try:
            if len(proof.siblings) != len(proof.directions):
                return False
            if not Hasher.is_valid_hash(proof.sha256.lower()):
                return False

            current = hash_leaf(proof.sha256)
            if not hmac.compare_digest(current.hex(), proof.leaf_hash.lower()):
                return False

            position = proof.index
            if position < 0:
                return False
            for sibling_hex, direction in zip(proof.siblings, proof.directions):
                sibling = bytes.fromhex(sibling_hex)
                if len(sibling) != 32:
                    return False
                expected = LEFT if position % 2 == 1 else RIGHT
                if direction != expected:
                    return False
                if direction == LEFT:
                    current = hash_node(sibling, current)
                else:
                    current = hash_node(current, sibling)
                position //= 2

            if position != 0:
                return False
            return hmac.compare_digest(current.hex(), root.lower())
        except (ValueError, TypeError, AttributeError):
            return False


def build_tree(hashes: list[str]) -> MerkleTree:
    """Build a Merkle tree over hashes in the given order."""
    return MerkleTree(hashes)


def generate_proof(match_id: str, match_hash: str, tree: MerkleTree) -> MerkleProof:
    """Inclusion proof for match_hash in tree."""
    return tree.generate_proof(match_id, match_hash)


def verify_proof(proof: MerkleProof, root: str) -> bool:
    """True if proof re-derives root."""
    return MerkleTree.verify_proof(proof, root)
