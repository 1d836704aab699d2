"""
SHA-256 Merkle commitment over an operation's signature set.

Leaves are ``sha256(entry)`` in the order given; a parent is
``sha256(left_hex + right_hex)`` and an odd trailing node is paired with
itself. Proof steps are ``(sibling_hash, side)`` where side is ``"L"`` or
``"R"`` relative to the running hash.
"""
from __future__ import annotations

import hashlib
from typing import List, Sequence, Tuple

ProofStep = Tuple[str, str]


def hash_leaf(entry: bytes) -> str:
    return hashlib.sha256(entry).hexdigest()


def hash_pair(left: str, right: str) -> str:
    return hashlib.sha256((left + right).encode("utf-8")).hexdigest()


class MerkleTree:
    """Tree levels kept bottom-up so any leaf's path can be read off."""

    def __init__(self, entries: Sequence[bytes]):
        if not entries:
            raise ValueError("Cannot build Merkle tree from empty entries list")

        level = [hash_leaf(entry) for entry in entries]
        self._levels: List[List[str]] = [level]
        while len(level) > 1:
            level = [
                hash_pair(level[i], level[i + 1] if i + 1 < len(level) else level[i])
                for i in range(0, len(level), 2)
            ]
            self._levels.append(level)

    @property
    def root(self) -> str:
        return self._levels[-1][0]

    def __len__(self) -> int:
        return len(self._levels[0])

    def get_proof(self, index: int) -> List[ProofStep]:
        if not 0 <= index < len(self):
            raise ValueError(f"Index {index} out of range [0, {len(self)})")

        proof: List[ProofStep] = []
        for level in self._levels[:-1]:
            if index % 2:
                proof.append((level[index - 1], "L"))
            else:
                proof.append((level[min(index + 1, len(level) - 1)], "R"))
            index //= 2
        return proof

    @staticmethod
    def verify_proof(leaf_hash: str, proof: Sequence[ProofStep], root: str) -> bool:
        current = leaf_hash
        for sibling, side in proof:
            if side == "L":
                current = hash_pair(sibling, current)
            elif side == "R":
                current = hash_pair(current, sibling)
            else:
                return False
        return current == root


__all__ = ["MerkleTree", "ProofStep", "hash_leaf", "hash_pair"]
