"""
Repair steps for map documents written by older versions.

Older documents either store the scene node transform under
``mapNodeOm`` instead of ``mapNodeTransform`` or have no ``parentId`` on
their keyframes. These steps run only when such a document is detected and
are kept apart from the regular load path.
"""
import logging
from typing import List, Optional

import cv2
import numpy as np

from .spanning_tree import GreedyCovisibilityTreeBuilder, SpanningTreeBuilder

logger = logging.getLogger(__name__)

NODE_TRANSFORM_KEY = "mapNodeTransform"
LEGACY_NODE_TRANSFORM_KEY = "mapNodeOm"


def read_node_transform(fs: cv2.FileStorage) -> np.ndarray:
    """Read the scene node transform, accepting the legacy key."""
    node = fs.getNode(NODE_TRANSFORM_KEY)
    if node.empty():
        node = fs.getNode(LEGACY_NODE_TRANSFORM_KEY)
        if not node.empty():
            logger.info(f"Migrating legacy field {LEGACY_NODE_TRANSFORM_KEY}")
    if node.empty():
        return np.eye(4)

    matrix = node.mat()
    if matrix is None or matrix.shape != (4, 4):
        logger.warning("Ignoring malformed node transform")
        return np.eye(4)
    return matrix.astype(np.float64)


def needs_spanning_tree_repair(keyframes: List) -> bool:
    """True when a keyframe other than the root has no parent."""
    return any(kf.id != 0 and kf.get_parent_id() is None for kf in keyframes)


def repair_spanning_tree(
    keyframes: List, root, builder: Optional[SpanningTreeBuilder] = None
) -> int:
    """
    Rebuild the spanning tree of all keyframes from covisibility weights.

    Keyframes without any covisibility path to the root are attached to the
    root directly.

    Args:
        keyframes: All loaded keyframes, with connections already updated
        root: Keyframe with id 0
        builder: Tree construction strategy (greedy by default)

    Returns:
        Number of keyframes whose parent changed
    """
    builder = builder or GreedyCovisibilityTreeBuilder()
    graph = {kf.id: kf.get_connection_weights() for kf in keyframes}
    parents = builder.build(root.id, graph)

    changed = 0
    for keyframe in keyframes:
        if keyframe.id == root.id:
            continue
        parent_id = parents.get(keyframe.id)
        if parent_id is None:
            logger.warning(
                f"Keyframe {keyframe.id} has no covisibility path to the root, "
                f"attaching it to keyframe {root.id}"
            )
            parent_id = root.id
        if keyframe.get_parent_id() != parent_id:
            keyframe.change_parent(parent_id)
            changed += 1

    logger.info(
        f"Rebuilt spanning tree with {builder.__class__.__name__}: "
        f"{changed} parent links updated"
    )
    return changed
