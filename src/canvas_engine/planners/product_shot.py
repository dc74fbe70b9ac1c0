"""
Product Shot Planner - A grid of image generators around one product photo.

Each enabled shot becomes an image generator node; every node takes the
product media node as its reference image.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from canvas_engine.core.builder import CreateNodeInput, GraphBuilder
from canvas_engine.core.graph import HANDLE_OUTPUT, HANDLE_REFERENCE, NodeId, Position
from canvas_engine.core.node_types import NodeKind


logger = logging.getLogger(__name__)


IMAGE_NODE_WIDTH = 280
HORIZONTAL_SPACING = 350
VERTICAL_SPACING = 350

SHOT_IMAGE_MODEL = "nanobanana-pro"


@dataclass
class ProductShot:
    """One camera angle of the product."""
    number: int
    angle_name: str
    prompt: str
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProductShot:
        return cls(
            number=int(data.get("number", 0)),
            angle_name=data.get("angleName", ""),
            prompt=data.get("prompt", ""),
            enabled=bool(data.get("enabled", True)),
        )


def grid_columns(count: int) -> int:
    """Columns used for ``count`` shots."""
    if count <= 4:
        return 2
    if count <= 6:
        return 3
    return 4


class ProductShotPlanner:
    """Lays out product shots through a GraphBuilder."""

    def __init__(self, builder: GraphBuilder):
        self.builder = builder

    def materialize(
        self,
        shots: list[ProductShot],
        product_source: NodeId | None = None,
    ) -> list[NodeId]:
        """
        Create one image node per enabled shot as a single undo step.

        Raises:
            ValueError: If no shot is enabled.
        """
        enabled = [shot for shot in shots if shot.enabled]
        if not enabled:
            raise ValueError("No shots enabled")

        columns = grid_columns(len(enabled))
        rows = math.ceil(len(enabled) / columns)
        center = self.builder.get_viewport_center()
        grid_width = (columns - 1) * HORIZONTAL_SPACING + IMAGE_NODE_WIDTH
        start = Position(center.x - grid_width / 2, center.y - rows * VERTICAL_SPACING / 2)

        specs = []
        for index, shot in enumerate(enabled):
            col, row = index % columns, index // columns
            specs.append(CreateNodeInput(
                kind=NodeKind.IMAGE_GENERATOR,
                position=Position(
                    start.x + col * HORIZONTAL_SPACING,
                    start.y + row * VERTICAL_SPACING,
                ),
                name=shot.angle_name,
                data={"prompt": shot.prompt, "model": SHOT_IMAGE_MODEL},
            ))

        with self.builder.transaction():
            node_ids = self.builder.create_nodes(specs)
            if product_source is not None:
                for node_id in node_ids:
                    self.builder.create_edge(product_source, HANDLE_OUTPUT, node_id, HANDLE_REFERENCE)

        self.builder.fit_view()
        logger.info("Created %d product shot nodes", len(node_ids))
        return node_ids
