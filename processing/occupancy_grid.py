"""Quadtree occupancy grid over a floor plan polygon.

The grid answers "is this point inside the floor plan" at a fixed cell
resolution. Instead of a dense raster it stores a quadtree whose leaves are
either wholly inside (Full) or wholly outside (Empty) the polygon; large open
rooms collapse into a handful of nodes while walls are resolved down to the
cell size.

The tree is built once per floor plan and never mutated, so one grid can be
shared by every pose query and thread.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np
from shapely.geometry import Point, Polygon, box
from shapely.prepared import prep

logger = logging.getLogger(__name__)


class InvalidInput(ValueError):
    """Floor plan cannot be turned into a grid."""


@dataclass(frozen=True)
class Empty:
    """Leaf outside the floor plan."""


@dataclass(frozen=True)
class Full:
    """Leaf inside the floor plan."""


@dataclass(frozen=True)
class Quad:
    """Internal node with four equal quadrants."""
    nw: "Node"
    ne: "Node"
    sw: "Node"
    se: "Node"

    @property
    def children(self) -> Tuple["Node", "Node", "Node", "Node"]:
        return (self.nw, self.ne, self.sw, self.se)


Node = Union[Empty, Full, Quad]

EMPTY = Empty()
FULL = Full()


def _build(prepared, polygon: Polygon, x0: float, y0: float, size: float, cell_size: float) -> Node:
    square = box(x0, y0, x0 + size, y0 + size)
    if prepared.contains(square):
        return FULL
    if not prepared.intersects(square):
        return EMPTY
    if size <= cell_size:
        half = size / 2
        return FULL if polygon.contains(Point(x0 + half, y0 + half)) else EMPTY

    half = size / 2
    nw = _build(prepared, polygon, x0, y0 + half, half, cell_size)
    ne = _build(prepared, polygon, x0 + half, y0 + half, half, cell_size)
    sw = _build(prepared, polygon, x0, y0, half, cell_size)
    se = _build(prepared, polygon, x0 + half, y0, half, cell_size)

    if not isinstance(nw, Quad) and nw == ne == sw == se:
        return nw
    return Quad(nw, ne, sw, se)


@dataclass(frozen=True)
class OccupancyGrid:
    """Immutable inside/outside index of a floor plan."""
    root: Node
    cell_size: float
    origin: Tuple[float, float]
    width: int  # cells covering the polygon envelope
    height: int
    size: float  # side of the root square

    @classmethod
    def from_polygon(
        cls,
        vertices: Sequence[Tuple[float, float]],
        cell_size: float = 0.1,
    ) -> "OccupancyGrid":
        """Build a grid from an ordered list of (x, y) vertices in meters.

        Raises:
            InvalidInput: fewer than three vertices or non-positive cell size
        """
        if len(vertices) < 3:
            raise InvalidInput(f"polygon needs at least 3 vertices, got {len(vertices)}")
        if not cell_size > 0:
            raise InvalidInput(f"cell size must be positive, got {cell_size}")

        polygon = Polygon(vertices)
        if not polygon.is_valid:
            logger.warning("Floor plan polygon is not valid (self-intersecting?); containment may be wrong")

        min_x, min_y, max_x, max_y = polygon.bounds
        width = max(1, math.ceil(round((max_x - min_x) / cell_size, 9)))
        height = max(1, math.ceil(round((max_y - min_y) / cell_size, 9)))
        depth = math.ceil(math.log2(max(width, height))) if max(width, height) > 1 else 0
        size = cell_size * (2 ** depth)

        root = _build(prep(polygon), polygon, min_x, min_y, size, cell_size)
        grid = cls(root, cell_size, (min_x, min_y), width, height, size)
        logger.info(
            f"Built occupancy grid {width}x{height} cells at {cell_size}m "
            f"({grid.node_count()} nodes)"
        )
        return grid

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        """(min_x, min_y, max_x, max_y) of the covered envelope."""
        ox, oy = self.origin
        return (ox, oy, ox + self.width * self.cell_size, oy + self.height * self.cell_size)

    def is_occupied(self, x: float, y: float) -> bool:
        """True if (x, y) lies inside the floor plan."""
        min_x, min_y, max_x, max_y = self.extent
        if not (min_x <= x < max_x and min_y <= y < max_y):
            return False

        node = self.root
        x0, y0 = self.origin
        size = self.size
        while isinstance(node, Quad):
            size /= 2
            mid_x = x0 + size
            mid_y = y0 + size
            if y < mid_y:
                if x < mid_x:
                    node = node.sw
                else:
                    node, x0 = node.se, mid_x
            else:
                y0 = mid_y
                if x < mid_x:
                    node = node.nw
                else:
                    node, x0 = node.ne, mid_x
        return isinstance(node, Full)

    def occupied(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        """Vectorized is_occupied over arrays of any matching shape."""
        xs = np.asarray(xs, dtype=float)
        ys = np.asarray(ys, dtype=float)
        out = np.zeros(xs.shape, dtype=bool)

        min_x, min_y, max_x, max_y = self.extent
        inside = (xs >= min_x) & (xs < max_x) & (ys >= min_y) & (ys < max_y)
        idx = np.flatnonzero(inside.ravel())
        if len(idx):
            flat = out.ravel()
            self._descend(self.root, self.origin[0], self.origin[1], self.size,
                          xs.ravel()[idx], ys.ravel()[idx], idx, flat)
            out = flat.reshape(xs.shape)
        return out

    def _descend(self, node, x0, y0, size, xs, ys, idx, out):
        if isinstance(node, Full):
            out[idx] = True
            return
        if isinstance(node, Empty) or len(idx) == 0:
            return

        half = size / 2
        mid_x = x0 + half
        mid_y = y0 + half
        west = xs < mid_x
        south = ys < mid_y
        for child, mask, cx, cy in (
            (node.nw, west & ~south, x0, mid_y),
            (node.ne, ~west & ~south, mid_x, mid_y),
            (node.sw, west & south, x0, y0),
            (node.se, ~west & south, mid_x, y0),
        ):
            if mask.any():
                self._descend(child, cx, cy, half, xs[mask], ys[mask], idx[mask], out)

    def node_count(self) -> int:
        count = 0
        stack = [self.root]
        while stack:
            node = stack.pop()
            count += 1
            if isinstance(node, Quad):
                stack.extend(node.children)
        return count

    def leaf_count(self) -> int:
        count = 0
        stack = [self.root]
        while stack:
            node = stack.pop()
            if isinstance(node, Quad):
                stack.extend(node.children)
            else:
                count += 1
        return count
