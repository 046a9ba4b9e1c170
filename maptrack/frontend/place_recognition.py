"""
Place recognition with a binary bag-of-words vocabulary.

The vocabulary is a hierarchical k-majority tree over ORB descriptors
stored in a complete heap layout: node 0 is the root and the children of
node ``i`` are ``i * k + 1 ... i * k + k``. The leaves are the visual words.
"""
import logging
import math
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union

import numpy as np
import torch

from .feature_extraction.base import DESCRIPTOR_BYTES
from .feature_extraction.feature_matcher import POPCOUNT_LUT, hamming_distance_matrix

BowVector = Dict[int, float]
FeatureVector = Dict[int, List[int]]


class OrbVocabulary:
    """Hierarchical vocabulary of binary words with TF-IDF weighting."""

    def __init__(self, branching: int = 10, depth: int = 4):
        """
        Initialize an empty vocabulary.

        Args:
            branching: Number of children per node (k)
            depth: Number of levels below the root (L)
        """
        if branching < 2 or depth < 1:
            raise ValueError(
                f"Invalid vocabulary shape: branching={branching}, depth={depth}"
            )
        self.branching = branching
        self.depth = depth
        self.num_nodes = (branching ** (depth + 1) - 1) // (branching - 1)
        self.num_words = branching**depth
        self.first_leaf = self.num_nodes - self.num_words

        self.centroids = torch.zeros((self.num_nodes, DESCRIPTOR_BYTES), dtype=torch.uint8)
        self.idf = torch.ones(self.num_words, dtype=torch.float64)
        self.logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def create(cls, branching: int = 10, depth: int = 4, seed: int = 0) -> "OrbVocabulary":
        """Vocabulary with random centroids and uniform weights."""
        vocabulary = cls(branching, depth)
        generator = torch.Generator().manual_seed(seed)
        vocabulary.centroids = torch.randint(
            0,
            256,
            (vocabulary.num_nodes, DESCRIPTOR_BYTES),
            dtype=torch.uint8,
            generator=generator,
        )
        return vocabulary

    @classmethod
    def from_config(cls, config: dict = None) -> "OrbVocabulary":
        config = config or {}
        path = config.get("path")
        if path:
            return cls.load(path)
        return cls.create(
            config.get("branching", 10), config.get("depth", 4), config.get("seed", 0)
        )

    def _children(self, node: int) -> range:
        start = node * self.branching + 1
        return range(start, start + self.branching)

    def train(
        self,
        descriptor_sets: Sequence[torch.Tensor],
        iterations: int = 10,
        seed: int = 0,
    ):
        """
        Build the tree with k-majority clustering and compute IDF weights.

        Args:
            descriptor_sets: One (N, 32) uint8 tensor per training image
            iterations: Clustering iterations per node
            seed: Random seed for centroid initialisation
        """
        sets = [d for d in descriptor_sets if d.shape[0] > 0]
        if not sets:
            raise ValueError("Cannot train a vocabulary without descriptors")

        rng = np.random.default_rng(seed)
        all_descriptors = torch.cat(sets).numpy()
        self.centroids = torch.zeros_like(self.centroids)

        # Breadth-first over (node, member descriptors)
        pending = [(0, all_descriptors)]
        while pending:
            node, members = pending.pop()
            children = self._children(node)
            if children.start >= self.num_nodes:
                continue
            assignment, centroids = self._k_majority(members, iterations, rng)
            for c, child in enumerate(children):
                self.centroids[child] = torch.from_numpy(centroids[c])
                pending.append((child, members[assignment == c]))

        # Inverse document frequency per word
        n_docs = len(sets)
        doc_counts = np.zeros(self.num_words, dtype=np.int64)
        for descriptors in sets:
            words = np.unique(self.words_of(descriptors).numpy())
            doc_counts[words] += 1
        idf = np.log(n_docs / np.maximum(doc_counts, 1))
        idf[doc_counts == 0] = math.log(n_docs) if n_docs > 1 else 1.0
        self.idf = torch.from_numpy(idf.astype(np.float64))
        self.logger.info(
            f"Trained vocabulary with {self.num_words} words from {n_docs} images"
        )

    def _k_majority(self, members: np.ndarray, iterations: int, rng):
        k = self.branching
        if len(members) == 0:
            return np.zeros(0, dtype=np.int64), np.zeros((k, DESCRIPTOR_BYTES), np.uint8)
        if len(members) <= k:
            centroids = np.concatenate(
                [members, np.repeat(members[-1:], k - len(members), axis=0)]
            )
            return np.arange(len(members)), centroids.astype(np.uint8)

        centroids = members[rng.choice(len(members), size=k, replace=False)].copy()
        members_t = torch.from_numpy(members)
        bits = np.unpackbits(members, axis=1)
        assignment = np.zeros(len(members), dtype=np.int64)
        for iteration in range(iterations):
            distances = hamming_distance_matrix(members_t, torch.from_numpy(centroids))
            new_assignment = torch.argmin(distances, dim=1).numpy()
            if iteration > 0 and np.array_equal(new_assignment, assignment):
                break
            assignment = new_assignment
            for c in range(k):
                cluster = bits[assignment == c]
                if len(cluster) == 0:
                    continue
                majority = (cluster.mean(axis=0) >= 0.5).astype(np.uint8)
                centroids[c] = np.packbits(majority)
        return assignment, centroids

    def _descend(self, descriptors: torch.Tensor, stop_depth: int):
        """Return (leaf node, ancestor at ``stop_depth``) for every descriptor."""
        n = descriptors.shape[0]
        nodes = torch.zeros(n, dtype=torch.long)
        ancestors = nodes.clone()
        offsets = torch.arange(1, self.branching + 1)
        lut = POPCOUNT_LUT

        for level in range(1, self.depth + 1):
            children = nodes.unsqueeze(1) * self.branching + offsets
            xor = torch.bitwise_xor(
                self.centroids[children], descriptors.unsqueeze(1)
            ).long()
            distances = lut[xor].sum(dim=2)
            nodes = children.gather(1, torch.argmin(distances, dim=1, keepdim=True))[
                :, 0
            ]
            if level == stop_depth:
                ancestors = nodes.clone()
        return nodes, ancestors

    def words_of(self, descriptors: torch.Tensor) -> torch.Tensor:
        leaves, _ = self._descend(descriptors, self.depth)
        return leaves - self.first_leaf

    def transform(
        self, descriptors: torch.Tensor, levels_up: int = 2
    ) -> Tuple[BowVector, FeatureVector]:
        """
        Convert descriptors into a bag-of-words vector and a direct index.

        Args:
            descriptors: (N, 32) uint8 descriptors
            levels_up: The direct index groups features by their ancestor
                ``levels_up`` levels above the words

        Returns:
            Tuple of (bow vector {word: weight} with unit L1 norm,
            feature vector {node: [feature indices]})
        """
        if descriptors.shape[0] == 0:
            return {}, {}

        stop_depth = max(self.depth - levels_up, 1)
        leaves, ancestors = self._descend(descriptors.cpu(), stop_depth)
        words = (leaves - self.first_leaf).tolist()

        bow: BowVector = defaultdict(float)
        features: FeatureVector = defaultdict(list)
        idf = self.idf.tolist()
        for idx, (word, node) in enumerate(zip(words, ancestors.tolist())):
            weight = idf[word]
            if weight > 0:
                bow[word] += weight
            features[node].append(idx)

        norm = sum(abs(w) for w in bow.values())
        if norm > 0:
            bow = {word: w / norm for word, w in bow.items()}
        return dict(bow), dict(features)

    @staticmethod
    def score(v1: BowVector, v2: BowVector) -> float:
        """L1 similarity between two normalised bag-of-words vectors, in [0, 1]."""
        if len(v2) < len(v1):
            v1, v2 = v2, v1
        return sum(min(w, v2[word]) for word, w in v1.items() if word in v2)

    def save(self, path: Union[str, Path]):
        np.savez_compressed(
            path,
            centroids=self.centroids.numpy(),
            idf=self.idf.numpy(),
            branching=self.branching,
            depth=self.depth,
        )
        self.logger.info(f"Saved vocabulary to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "OrbVocabulary":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Vocabulary file not found: {path}")
        data = np.load(path)
        vocabulary = cls(int(data["branching"]), int(data["depth"]))
        centroids = data["centroids"]
        if centroids.shape != (vocabulary.num_nodes, DESCRIPTOR_BYTES):
            raise ValueError(f"Corrupt vocabulary file {path}: {centroids.shape}")
        vocabulary.centroids = torch.from_numpy(centroids.astype(np.uint8))
        vocabulary.idf = torch.from_numpy(data["idf"].astype(np.float64))
        vocabulary.logger.info(f"Loaded vocabulary from {path}")
        return vocabulary


class KeyframeDatabase:
    """
    Inverted index from visual words to the keyframes containing them.

    Every indexed keyframe must also be in the map; the map removes erased
    keyframes from the database while holding its own lock (map before
    database).
    """

    def __init__(self, vocabulary: OrbVocabulary):
        self.vocabulary = vocabulary
        self._inverted_file: Dict[int, List] = defaultdict(list)
        self._lock = threading.RLock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def add(self, keyframe):
        with self._lock:
            for word in keyframe.bow_vector:
                entries = self._inverted_file[word]
                if keyframe not in entries:
                    entries.append(keyframe)

    def erase(self, keyframe):
        with self._lock:
            for word in keyframe.bow_vector:
                entries = self._inverted_file.get(word)
                if entries and keyframe in entries:
                    entries.remove(keyframe)

    def clear(self):
        with self._lock:
            self._inverted_file = defaultdict(list)

    def size(self) -> int:
        with self._lock:
            return len({kf.id for entries in self._inverted_file.values() for kf in entries})

    def _keyframes_sharing_words(self, bow_vector: BowVector, excluded=()) -> Dict:
        shared: Dict = {}
        with self._lock:
            for word in bow_vector:
                for keyframe in self._inverted_file.get(word, ()):
                    if keyframe.id in excluded:
                        continue
                    shared[keyframe] = shared.get(keyframe, 0) + 1
        return shared

    def _accumulate_by_covisibility(
        self, bow_vector: BowVector, shared: Dict, min_score: float = 0.0
    ) -> List:
        """
        Score keyframes with enough common words and group them with their
        best covisible neighbours.

        Returns:
            The best keyframe of every group whose accumulated score is
            above 75% of the best accumulated score, highest score first.
        """
        if not shared:
            return []

        min_common_words = 0.8 * max(shared.values())
        scores = {}
        for keyframe, common in shared.items():
            if common > min_common_words:
                score = self.vocabulary.score(bow_vector, keyframe.bow_vector)
                if score >= min_score:
                    scores[keyframe.id] = (score, keyframe)
        if not scores:
            return []

        accumulated = []
        best_acc_score = 0.0
        for score, keyframe in scores.values():
            acc_score = score
            best_score = score
            best_keyframe = keyframe
            for neighbour_id in keyframe.get_best_covisibility_ids(10):
                if neighbour_id not in scores:
                    continue
                neighbour_score, neighbour = scores[neighbour_id]
                acc_score += neighbour_score
                if neighbour_score > best_score:
                    best_keyframe = neighbour
                    best_score = neighbour_score
            accumulated.append((acc_score, best_keyframe))
            best_acc_score = max(best_acc_score, acc_score)

        min_score_to_retain = 0.75 * best_acc_score
        accumulated.sort(key=lambda item: (-item[0], item[1].id))
        candidates = []
        seen = set()
        for acc_score, keyframe in accumulated:
            if acc_score > min_score_to_retain and keyframe.id not in seen:
                seen.add(keyframe.id)
                candidates.append(keyframe)
        return candidates

    def detect_relocalization_candidates(self, frame) -> List:
        """
        Keyframes similar to a frame, best match first.

        Args:
            frame: Frame with features; its bag of words is computed here

        Returns:
            Candidate keyframes, possibly empty
        """
        frame.compute_bow(self.vocabulary)
        shared = self._keyframes_sharing_words(frame.bow_vector)
        candidates = [
            kf
            for kf in self._accumulate_by_covisibility(frame.bow_vector, shared)
            if not kf.is_bad()
        ]
        self.logger.debug(
            f"Frame {frame.id}: {len(shared)} keyframes share words, "
            f"{len(candidates)} relocalization candidates"
        )
        return candidates

    def detect_loop_candidates(self, keyframe, min_score: float) -> List:
        """
        Keyframes that may close a loop with ``keyframe``.

        The tracker does not close loops itself; this is the query a loop
        closing stage runs on each new keyframe before geometric
        verification, after which it records the accepted pair with
        ``Keyframe.add_loop_edge``. Keyframes already connected in the
        covisibility graph are excluded.

        Args:
            keyframe: Query keyframe
            min_score: Minimum similarity score

        Returns:
            Candidate keyframes, possibly empty
        """
        excluded = keyframe.get_connected_keyframe_ids() | {keyframe.id}
        shared = self._keyframes_sharing_words(keyframe.bow_vector, excluded)
        return [
            kf
            for kf in self._accumulate_by_covisibility(
                keyframe.bow_vector, shared, min_score
            )
            if not kf.is_bad()
        ]
