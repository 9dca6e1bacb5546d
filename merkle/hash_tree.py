"""Binary hash tree over an ordered list of leaf hashes."""

import hashlib
from dataclasses import dataclass, field
from typing import List, Tuple, Union

# (sibling_hash, is_left_sibling) from leaf to root
ProofStep = Tuple[str, bool]

EMPTY_ROOT = hashlib.sha256(b'').hexdigest()


def hash_content(content: Union[bytes, str]) -> str:
    """SHA-256 hex digest of file content (str is UTF-8 encoded)."""
    if isinstance(content, str):
        content = content.encode('utf-8')
    return hashlib.sha256(content).hexdigest()


def combine_hashes(left: str, right: str) -> str:
    """Hash of two concatenated hex digests."""
    return hashlib.sha256((left + right).encode('utf-8')).hexdigest()


@dataclass
class HashTreeResult:
    """Root hash plus every level of the tree, leaves first."""

    root_hash: str
    levels: List[List[str]] = field(default_factory=list)


class HashTree:
    """Binary hash tree used to compare a whole workspace through one root.

    An odd-sized level is padded by duplicating its last node. This keeps the
    tree compatible with snapshots written by earlier versions, but it means
    ``[a, b, c]`` and ``[a, b, c, c]`` produce the same root. Callers that need
    exact equality must also compare the leaf count.
    """

    def __init__(self):
        self.leaves: List[str] = []
        self.levels: List[List[str]] = [[]]

    @property
    def root_hash(self) -> str:
        top = self.levels[-1]
        return top[0] if top else EMPTY_ROOT

    def build(self, leaf_hashes: List[str]) -> HashTreeResult:
        """Build the tree from pre-computed leaf hashes.

        Args:
            leaf_hashes: Leaf hashes in a stable order

        Returns:
            HashTreeResult with root hash and all levels
        """
        self.leaves = list(leaf_hashes)
        self.levels = [list(self.leaves)]

        current = self.leaves
        while len(current) > 1:
            next_level = []
            for i in range(0, len(current), 2):
                left = current[i]
                right = current[i + 1] if i + 1 < len(current) else left
                next_level.append(combine_hashes(left, right))
            self.levels.append(next_level)
            current = next_level

        return HashTreeResult(root_hash=self.root_hash, levels=[list(level) for level in self.levels])

    def get_proof(self, index: int) -> List[ProofStep]:
        """Get the membership proof for the leaf at ``index``.

        The unpaired last node of an odd level is its own sibling, mirroring
        the padding rule used by ``build``.

        Raises:
            IndexError: If index is outside the leaf list
        """
        if index < 0 or index >= len(self.leaves):
            raise IndexError(f"Leaf index {index} out of range (0..{len(self.leaves) - 1})")

        proof: List[ProofStep] = []
        current_index = index
        for level in self.levels[:-1]:
            is_right_child = current_index % 2 == 1
            sibling_index = current_index - 1 if is_right_child else current_index + 1
            if sibling_index >= len(level):
                sibling_index = current_index
            proof.append((level[sibling_index], is_right_child))
            current_index //= 2

        return proof

    @staticmethod
    def verify_proof(leaf_content: Union[bytes, str], proof: List[ProofStep], root_hash: str) -> bool:
        """Check that ``leaf_content`` is a member of the tree with ``root_hash``.

        For a step where an unpaired node is its own sibling the direction
        flag has no effect, since both orders combine to the same hash. Only
        the sibling hashes of such steps are verified.
        """
        current = hash_content(leaf_content)
        for sibling_hash, is_left_sibling in proof:
            if is_left_sibling:
                current = combine_hashes(sibling_hash, current)
            else:
                current = combine_hashes(current, sibling_hash)
        return current == root_hash
