# aad/core/tape.py
from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np

from .errors import TapeConsistencyError
from .node import DiffCallback, Edge, Node

log = logging.getLogger(__name__)


def fit_to_shape(g: Any, shape: Sequence[int]) -> np.ndarray:
    """
    Bring a gradient contribution to `shape`: sum over axes that were
    introduced or stretched by broadcasting, then broadcast the remainder.
    """
    shape = tuple(shape)
    g = np.asarray(g, dtype=np.float64)
    if g.shape == shape:
        return g
    while g.ndim > len(shape):
        g = g.sum(axis=0)
    if g.ndim == len(shape):
        for axis, n in enumerate(shape):
            if n == 1 and g.shape[axis] != 1:
                g = g.sum(axis=axis, keepdims=True)
    return np.broadcast_to(g, shape).copy()


class Tape:
    """
    Reference-counted arena of AD nodes addressed by integer handles.

    Handle 0 means "no node". Handles are never reused within one tape, so a
    stale handle can be detected with `has_node()` instead of silently
    aliasing a newer node.

    Ownership rules:
      - `new_node()` returns a handle with refcount 1, owned by the caller.
      - an edge `source -> target` owns one reference on `source`.
      - when a refcount reaches zero the node is destroyed, its incoming edges
        are removed (releasing their callbacks) and their sources decremented.
    """

    def __init__(self):
        self.nodes: Dict[int, Node] = {}
        self._next_index = 1
        self._epoch = 0
        self._edge_count = 0
        self._dep_frames: List[List[int]] = []
        self._free_queue: List[int] = []
        self._freeing = False
        self._todo: List[int] = []

    def __len__(self) -> int:
        return len(self.nodes)

    def __bool__(self) -> bool:
        # truthy even when empty
        return True

    def __repr__(self):
        return f"Tape(nodes={len(self.nodes)}, edges={self._edge_count})"

    @property
    def edge_count(self) -> int:
        return self._edge_count

    @property
    def epoch(self) -> int:
        """Incremented by reset(); handles from an older epoch are inert."""
        return self._epoch

    def edges(self) -> Iterator[Edge]:
        for node in self.nodes.values():
            yield from node.in_edges

    def reset(self):
        """Drop every node and edge. Outstanding handles become inert."""
        self.nodes.clear()
        self._dep_frames.clear()
        self._free_queue.clear()
        self._todo.clear()
        self._edge_count = 0
        self._epoch += 1

    # ------------------------------------------------------------------ nodes
    def node(self, index: int) -> Node:
        try:
            return self.nodes[index]
        except KeyError:
            raise TapeConsistencyError(f"Tape: unknown node handle {index}") from None

    def has_node(self, index: int) -> bool:
        return index in self.nodes

    def new_node(self, label: Optional[str] = None, shape: Optional[Sequence[int]] = None,
                 *, dependency: bool = False) -> int:
        """
        Allocate a node with refcount 1.

        If `dependency` is set and a dependency scope is open, the node is also
        recorded in the innermost scope, which takes its own reference.
        """
        index = self._next_index
        self._next_index += 1
        self.nodes[index] = Node(index=index, label=label,
                                 shape=tuple(shape) if shape is not None else None)
        log.debug("new node %d (%s)", index, label)
        if dependency and self._dep_frames:
            self.record_dependency(index)
        return index

    def set_label(self, index: int, text: str):
        self.node(index).label = text

    def label(self, index: int) -> Optional[str]:
        return self.node(index).label

    def ref_count(self, index: int) -> int:
        return self.node(index).ref_count

    def inc_ref(self, index: int):
        if index == 0:
            return
        self.node(index).ref_count += 1

    def dec_ref(self, index: int):
        if index == 0:
            return
        node = self.node(index)
        if node.ref_count <= 0:
            raise TapeConsistencyError(f"Tape: reference count underflow on node {index}")
        node.ref_count -= 1
        if node.ref_count == 0:
            self._free_queue.append(index)
            self._collect()

    def _collect(self):
        # Iterative teardown: releasing one node may free a whole chain.
        if self._freeing:
            return
        self._freeing = True
        try:
            while self._free_queue:
                index = self._free_queue.pop()
                node = self.nodes.pop(index)
                if node.out_edges:
                    raise TapeConsistencyError(
                        f"Tape: node {index} freed while {len(node.out_edges)} "
                        f"outgoing edge(s) still reference it")
                log.debug("free node %d (%s)", index, node.label)
                in_edges, node.in_edges = node.in_edges, []
                for edge in in_edges:
                    self._unlink(edge)
        finally:
            self._freeing = False

    # ------------------------------------------------------------------ edges
    def add_edge(self, source: int, target: int, callback: Optional[DiffCallback] = None,
                 weight: Any = None) -> Edge:
        """Record `source -> target`; the edge takes a reference on `source`."""
        if source == target:
            raise TapeConsistencyError(f"Tape: self-edge on node {source}")
        if callback is not None and weight is not None:
            raise ValueError("add_edge(): an edge carries either a weight or a callback")
        src = self.node(source)
        dst = self.node(target)
        if callback is not None and dst.callback_in is not None:
            raise TapeConsistencyError(
                f"Tape: node {target} already has an incoming callback edge")
        edge = Edge(source=source, target=target, weight=weight, callback=callback)
        src.out_edges.append(edge)
        dst.in_edges.append(edge)
        src.ref_count += 1
        self._edge_count += 1
        return edge

    def remove_edge(self, edge: Edge):
        """Remove an edge, release its callback and drop its reference on the source."""
        dst = self.nodes.get(edge.target)
        if dst is not None:
            dst.in_edges.remove(edge)
        self._unlink(edge)

    def _unlink(self, edge: Edge):
        self.node(edge.source).out_edges.remove(edge)
        self._edge_count -= 1
        callback, edge.callback = edge.callback, None
        if callback is not None:
            callback.release()
        self.dec_ref(edge.source)

    # -------------------------------------------------------------- gradients
    def grad(self, index: int) -> Any:
        node = self.nodes.get(index)
        return None if node is None else node.grad

    def set_grad(self, index: int, value: Any):
        node = self.node(index)
        value = np.asarray(value, dtype=np.float64)
        if node.shape is not None:
            value = fit_to_shape(value, node.shape)
        node.grad = value.copy()

    def accum_grad(self, index: int, value: Any):
        node = self.node(index)
        value = np.asarray(value, dtype=np.float64)
        if node.shape is not None:
            value = fit_to_shape(value, node.shape)
        node.grad = value.copy() if node.grad is None else node.grad + value

    def clear_grad(self, index: int):
        self.node(index).grad = None

    def zero_grads(self):
        for node in self.nodes.values():
            node.grad = None

    # -------------------------------------------------------------- traversal
    def enqueue(self, index: int):
        """Queue a node as a traversal seed; the queue holds a reference."""
        if index == 0:
            return
        self.inc_ref(index)
        self._todo.append(index)

    def take_queue(self) -> List[int]:
        """Hand the queued seeds (and their references) to the caller."""
        todo, self._todo = self._todo, []
        return todo

    # ----------------------------------------------------------- dependencies
    def record_dependency(self, index: int):
        """Record `index` in the innermost dependency scope (takes a reference)."""
        if not self._dep_frames:
            return
        self.inc_ref(index)
        self._dep_frames[-1].append(index)

    def dependency_count(self) -> int:
        return len(self._dep_frames[-1]) if self._dep_frames else 0

    def clear_dependencies(self):
        if not self._dep_frames:
            return
        frame = self._dep_frames[-1]
        pending, frame[:] = list(frame), []
        for index in pending:
            self.dec_ref(index)

    def write_dependencies(self, out: List[int]):
        """Move the innermost scope's handles (and their references) into `out`."""
        if not self._dep_frames:
            return
        frame = self._dep_frames[-1]
        out.extend(frame)
        frame.clear()

    def capture_dependencies(self) -> "DependencySnapshot":
        return DependencySnapshot(self)


class DependencySnapshot:
    """
    Dependency scope around a nested evaluation.

        with tape.capture_dependencies() as deps:
            out = op.eval(...)
        ... use list(deps) ...
        deps.release()

    Inside the `with` block every dependency-tracked node goes to this scope
    instead of any enclosing one. On exit the handles move into the snapshot,
    which owns one reference per entry until `release()`.
    """

    def __init__(self, tape: Tape):
        self.tape = tape
        self.indices: List[int] = []
        self._depth = 0
        self._epoch = tape.epoch

    def __enter__(self):
        self.tape._dep_frames.append([])
        self._depth = len(self.tape._dep_frames)
        return self

    def __exit__(self, exc_type, exc, tb):
        frames = self.tape._dep_frames
        if self.tape.epoch != self._epoch:
            return False
        if len(frames) != self._depth:
            raise TapeConsistencyError("DependencySnapshot: unbalanced dependency scopes")
        self.tape.write_dependencies(self.indices)
        frames.pop()
        return False

    def __len__(self):
        return len(self.indices)

    def __iter__(self):
        return iter(self.indices)

    def release(self):
        indices, self.indices = self.indices, []
        if self.tape.epoch != self._epoch:
            return
        for index in indices:
            self.tape.dec_ref(index)


# Global default tape; values carry their own tape handle once attached
global_tape = Tape()


def current_tape() -> Tape:
    """Return the tape new gradient-enabled values are recorded on."""
    from . import tape as _tape_mod
    return _tape_mod.global_tape


@contextmanager
def use_tape(tape: Optional[Tape] = None):
    """
    Context manager to temporarily use a fresh tape:
        with use_tape() as t:
            ... build computation ...
            backward(y)
    """
    from . import tape as _tape_mod  # local import to avoid cycles
    prev = _tape_mod.global_tape
    try:
        _tape_mod.global_tape = tape or Tape()
        yield _tape_mod.global_tape
    finally:
        _tape_mod.global_tape = prev
