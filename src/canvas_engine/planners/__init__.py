"""
Planners - Turn abstract plans into canvas subgraphs via the GraphBuilder.
"""

from canvas_engine.planners.product_shot import ProductShot, ProductShotPlanner
from canvas_engine.planners.storyboard import (
    CancellationToken,
    StoryboardPlan,
    StoryboardPlanner,
    StoryboardScene,
    consume_stream,
)


__all__ = [
    "CancellationToken",
    "ProductShot",
    "ProductShotPlanner",
    "StoryboardPlan",
    "StoryboardPlanner",
    "StoryboardScene",
    "consume_stream",
]
