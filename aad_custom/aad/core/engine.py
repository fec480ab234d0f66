# aad/core/engine.py
from __future__ import annotations
import logging
from collections import deque
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import numpy as np

from . import config as config_mod
from .errors import TapeConsistencyError
from .node import Edge, Node
from .tape import Tape, current_tape
from .tree import leaves

log = logging.getLogger(__name__)


class ADMode(Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


def enqueue(value: Any):
    """Queue every attached leaf of `value` as a seed for the next traverse()."""
    for a in leaves(value):
        if a.grad_enabled:
            a.tape.enqueue(a.index)


def traverse(tape: Optional[Tape] = None, mode: ADMode = ADMode.BACKWARD,
             retain_graph: Optional[bool] = None) -> int:
    """
    Propagate gradients from the queued seeds through the tape.

    Backward mode visits the ancestors of the seeds, forward mode their
    descendants. A node is processed only after every visited node on the
    other side of its edges, so callbacks always see final gradients.

    For each edge of a processed node:
        - callback edge : callback.backward() / callback.forward(), once
        - weighted edge : grad(other) += weight * grad(node)
        - ordering edge : nothing

    With retain_graph=False each processed edge is removed from the tape, which
    releases its callback. Visited nodes are kept alive until the traversal
    ends.

    Returns the number of processed nodes.
    """
    tape = tape or current_tape()
    if retain_graph is None:
        retain_graph = config_mod.global_config.retain_graph
    backward = mode is ADMode.BACKWARD

    seeds = tape.take_queue()
    epoch = tape.epoch
    visited: List[int] = []
    try:
        visited = _reachable(tape, seeds, backward)
        for index in visited:
            tape.inc_ref(index)
        processed = _sweep(tape, visited, backward, retain_graph)
    finally:
        if tape.epoch == epoch:
            for index in visited:
                tape.dec_ref(index)
            for index in seeds:
                tape.dec_ref(index)

    log.debug("%s traversal processed %d node(s)", mode.value, processed)
    return processed


def _reachable(tape: Tape, seeds: List[int], backward: bool) -> List[int]:
    seen: Set[int] = set()
    order: List[int] = []
    stack = list(seeds)
    while stack:
        index = stack.pop()
        if index in seen:
            continue
        seen.add(index)
        order.append(index)
        node = tape.node(index)
        for e in (node.in_edges if backward else node.out_edges):
            stack.append(e.source if backward else e.target)
    return order


def _sweep(tape: Tape, visited: List[int], backward: bool, retain_graph: bool) -> int:
    # Kahn's algorithm restricted to the visited subgraph
    members = set(visited)
    pending: Dict[int, int] = {}
    for index in visited:
        node = tape.node(index)
        upstream = node.out_edges if backward else node.in_edges
        pending[index] = sum(1 for e in upstream
                             if (e.target if backward else e.source) in members)

    ready = deque(i for i in visited if pending[i] == 0)
    processed = 0
    while ready:
        index = ready.popleft()
        node = tape.node(index)
        for edge in list(node.in_edges if backward else node.out_edges):
            _propagate(tape, node, edge, backward)
            other = edge.source if backward else edge.target
            pending[other] -= 1
            if pending[other] == 0:
                ready.append(other)
            if not retain_graph:
                tape.remove_edge(edge)
        processed += 1

    if processed != len(visited):
        raise TapeConsistencyError(
            f"traverse(): {len(visited) - processed} node(s) were never ready "
            f"(cycle in the AD graph?)")
    return processed


def _propagate(tape: Tape, node: Node, edge: Edge, backward: bool):
    if edge.callback is not None:
        if backward:
            edge.callback.backward()
        else:
            edge.callback.forward()
        return
    if edge.weight is None or node.grad is None:
        return
    other = edge.source if backward else edge.target
    tape.accum_grad(other, edge.weight * node.grad)


def _seed(value: Any):
    for a in leaves(value):
        if not a.grad_enabled:
            log.warning("seeding a value that is not attached to the AD graph: %r", a)
            continue
        if a.tape.grad(a.index) is None:
            a.set_grad(np.ones(a.shape, dtype=np.float64))


def _tape_of(value: Any) -> Tape:
    for a in leaves(value):
        if a.grad_enabled:
            return a.tape
    return current_tape()


def backward_from(value: Any, retain_graph: Optional[bool] = None) -> int:
    """Reverse-mode traversal from `value`, using the gradients already set on it."""
    enqueue(value)
    return traverse(_tape_of(value), ADMode.BACKWARD, retain_graph)


def forward_from(value: Any, retain_graph: Optional[bool] = None) -> int:
    """Forward-mode traversal from `value`, using the gradients already set on it."""
    enqueue(value)
    return traverse(_tape_of(value), ADMode.FORWARD, retain_graph)


def backward(value: Any, retain_graph: Optional[bool] = None) -> int:
    """
    Reverse pass from `value`: leaves without a gradient are seeded with ones,
    then gradients are propagated to every ancestor.
    """
    _seed(value)
    return backward_from(value, retain_graph)


def forward(value: Any, retain_graph: Optional[bool] = None) -> int:
    """Forward pass from `value` (seeded with ones where no gradient is set)."""
    _seed(value)
    return forward_from(value, retain_graph)


def zero_grads(tape: Optional[Tape] = None):
    """Clear every gradient buffer on the tape."""
    (tape or current_tape()).zero_grads()

