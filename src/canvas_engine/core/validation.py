"""
Connection Validator - Decide whether a proposed edge may be created.

The rules run in a fixed order and the first match wins:
1. Reject self-edges
2. Reject edges whose endpoints are missing
3. Image handles need an image-typed source and a generator target; image
   generators additionally need a model that accepts image input, video
   generators take any image source
4. Storyboard reference sockets need an image-typed source
5. The ``text`` handle needs a text node as its source
6. Anything else is accepted

Handle classification runs before any capability lookup so a node whose
model is stale or unknown rejects cleanly instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Union

from canvas_engine.core.graph import (
    HANDLE_OUTPUT,
    HANDLE_TEXT,
    IMAGE_HANDLES,
    STRUCTURAL_IMAGE_HANDLES,
    Edge,
    Node,
    NodeId,
)
from canvas_engine.core.node_types import NodeKind
from canvas_engine.providers.base import ModelCapabilities
from canvas_engine.providers.registry import get_image_capabilities


logger = logging.getLogger(__name__)


# Kinds whose output is an image URL
IMAGE_SOURCE_KINDS = frozenset({NodeKind.MEDIA, NodeKind.IMAGE_GENERATOR})

CapabilityLookup = Callable[[str], Union[ModelCapabilities, None]]
NodeCollection = Union[Mapping[NodeId, Node], Iterable[Node]]


@dataclass(frozen=True)
class ConnectionCandidate:
    """A proposed edge that does not exist in the graph yet."""
    source: NodeId
    target: NodeId
    target_handle: str
    source_handle: str = HANDLE_OUTPUT


def _as_map(nodes: NodeCollection) -> Mapping[NodeId, Node]:
    if isinstance(nodes, Mapping):
        return nodes
    return {node.id: node for node in nodes}


def is_image_source(node: Node) -> bool:
    """True if the node's output is image-typed."""
    return node.kind in IMAGE_SOURCE_KINDS


def is_image_handle(handle: str | None) -> bool:
    return handle in IMAGE_HANDLES


def model_accepts_images(model_id: str | None, capabilities: CapabilityLookup) -> bool:
    """Whether an image model accepts reference input; unknown models do not."""
    if not model_id:
        return False
    try:
        caps = capabilities(model_id)
    except Exception:
        logger.debug("Capability lookup failed for model %r", model_id, exc_info=True)
        return False
    return caps is not None and caps.accepts_images


def is_valid_connection(
    candidate: ConnectionCandidate | Edge,
    nodes: NodeCollection,
    capabilities: CapabilityLookup | None = None,
) -> bool:
    """
    Check a proposed edge against the current nodes.

    Args:
        candidate: Proposed edge (an existing Edge is accepted too)
        nodes: Current nodes, as a mapping by id or any iterable
        capabilities: Image model lookup; defaults to the provider registry

    Returns:
        True if the edge may be created. Never raises.
    """
    if candidate.source == candidate.target:
        return False

    node_map = _as_map(nodes)
    source = node_map.get(candidate.source)
    target = node_map.get(candidate.target)
    if source is None or target is None:
        return False

    handle = candidate.target_handle

    if handle in IMAGE_HANDLES:
        if not is_image_source(source):
            return False
        if target.kind is NodeKind.IMAGE_GENERATOR:
            lookup = capabilities or get_image_capabilities
            return model_accepts_images(target.data.get("model"), lookup)
        return target.kind is NodeKind.VIDEO_GENERATOR

    if target.kind is NodeKind.STORYBOARD and handle in STRUCTURAL_IMAGE_HANDLES:
        return is_image_source(source)

    if handle == HANDLE_TEXT:
        return source.kind is NodeKind.TEXT

    return True
