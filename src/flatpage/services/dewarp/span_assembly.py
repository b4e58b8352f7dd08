"""Span assembly: chain text contours into left-to-right text lines.

Candidate edges are generated for every contour pair, scored by the gap
between facing endpoints plus an angular penalty, and linked greedily
from the best score up. Each contour ends up with at most one
predecessor and one successor, so the links form disjoint chains.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np

from flatpage.services.dewarp.config import DewarpConfig
from flatpage.services.dewarp.contour_detection import ContourArena, ContourInfo

logger = logging.getLogger(__name__)


@dataclass
class SpanAssemblyStats:
    """Counters describing one assembly pass.

    Attributes:
        candidate_pairs: Contour pairs that were scored
        valid_edges: Pairs that passed every threshold
        rejected_distance: Pairs whose endpoint gap was too long
        rejected_overlap: Pairs that overlapped horizontally
        rejected_angle: Pairs whose angular deviation was too large
        linked_contours: Links created by the greedy matcher
        span_sizes: Number of contours in each kept span
        span_widths: Total width of each kept span (px)
        dropped_spans: Chains discarded for being too narrow
    """

    candidate_pairs: int = 0
    valid_edges: int = 0
    rejected_distance: int = 0
    rejected_overlap: int = 0
    rejected_angle: int = 0
    linked_contours: int = 0
    span_sizes: list[int] = field(default_factory=list)
    span_widths: list[float] = field(default_factory=list)
    dropped_spans: int = 0


@dataclass(frozen=True)
class CandidateEdge:
    score: float
    left: int
    right: int


def angle_dist(angle_b: float, angle_a: float) -> float:
    """Absolute angular difference wrapped to [0, pi]."""
    diff = angle_b - angle_a
    while diff > math.pi:
        diff -= 2 * math.pi
    while diff < -math.pi:
        diff += 2 * math.pi
    return abs(diff)


def generate_candidate_edge(
    cinfo_a: ContourInfo,
    cinfo_b: ContourInfo,
    config: DewarpConfig,
    stats: SpanAssemblyStats | None = None,
) -> CandidateEdge | None:
    """Score a possible link between two contours.

    Returns:
        CandidateEdge from the left contour to the right one, or None if the
        pair fails the distance, overlap or angle threshold.
    """
    # Ensure a is to the left of b
    if cinfo_a.point0[0] > cinfo_b.point1[0]:
        cinfo_a, cinfo_b = cinfo_b, cinfo_a

    x_overlap = max(cinfo_a.local_overlap(cinfo_b), cinfo_b.local_overlap(cinfo_a))

    overall_tangent = cinfo_b.center - cinfo_a.center
    overall_angle = math.atan2(overall_tangent[1], overall_tangent[0])
    delta_angle = math.degrees(
        max(
            angle_dist(cinfo_a.angle, overall_angle),
            angle_dist(cinfo_b.angle, overall_angle),
        )
    )

    dist = float(np.linalg.norm(cinfo_b.point0 - cinfo_a.point1))

    if dist > config.edge_max_length:
        if stats is not None:
            stats.rejected_distance += 1
        return None
    if x_overlap > config.edge_max_overlap:
        if stats is not None:
            stats.rejected_overlap += 1
        return None
    if delta_angle > config.edge_max_angle:
        if stats is not None:
            stats.rejected_angle += 1
        return None

    score = dist + delta_angle * config.edge_angle_cost
    return CandidateEdge(score, cinfo_a.index, cinfo_b.index)


def assemble_spans(
    arena: ContourArena, config: DewarpConfig
) -> tuple[list[list[int]], SpanAssemblyStats]:
    """Assemble contours into text-line spans.

    The arena must already be in (y, x, w, h) order. Links are written
    into the arena's pred/succ fields; any previous links are cleared.

    Returns:
        (spans as lists of arena indices ordered left to right, stats)
    """
    stats = SpanAssemblyStats()
    arena.reset_links()

    candidate_edges: list[CandidateEdge] = []
    for i in range(len(arena)):
        for j in range(i):
            stats.candidate_pairs += 1
            edge = generate_candidate_edge(arena[i], arena[j], config, stats)
            if edge is not None:
                candidate_edges.append(edge)
    stats.valid_edges = len(candidate_edges)

    # Stable sort: equal scores keep generation order
    candidate_edges.sort(key=lambda e: e.score)

    for edge in candidate_edges:
        if arena.link(edge.left, edge.right):
            stats.linked_contours += 1

    spans: list[list[int]] = []
    for head in arena.heads():
        chain = arena.walk(head)
        width = sum(arena[idx].width for idx in chain)
        if width > config.span_min_width:
            spans.append(chain)
            stats.span_sizes.append(len(chain))
            stats.span_widths.append(width)
        else:
            stats.dropped_spans += 1

    logger.debug(
        f"Assembled {len(spans)} spans from {len(arena)} contours "
        f"({stats.valid_edges}/{stats.candidate_pairs} valid edges, "
        f"{stats.linked_contours} links)"
    )
    return spans, stats
