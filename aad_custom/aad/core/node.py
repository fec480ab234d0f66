# aad/core/node.py
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


class DiffCallback(ABC):
    """
    Opaque derivative logic attached to a tape edge.

    Traversals call `forward()` / `backward()` instead of the default weighted
    propagation. The edge owns the callback exclusively and calls `release()`
    exactly once when the edge is removed from the tape.
    """

    @abstractmethod
    def forward(self) -> None:
        ...

    @abstractmethod
    def backward(self) -> None:
        ...

    def name(self) -> str:
        return type(self).__name__

    def release(self) -> None:
        pass


@dataclass(eq=False)
class Edge:
    """
    Directed influence relation `source -> target`.

    Attributes
    ----------
    source, target : int
        Node handles. The edge holds one reference on `source`.
    weight : Any
        Local partial ∂target/∂source for built-in ops (float or ndarray).
        None for ordering-only and callback edges.
    callback : Optional[DiffCallback]
        Custom derivative logic; mutually exclusive with `weight`.
    """
    source: int
    target: int
    weight: Any = None
    callback: Optional[DiffCallback] = None

    @property
    def is_ordering_only(self) -> bool:
        return self.weight is None and self.callback is None


@dataclass(eq=False)
class Node:
    """
    One vertex of the tape.

    Attributes
    ----------
    index     : int             handle (> 0)
    ref_count : int             number of live holders
    label     : Optional[str]   display string (GraphViz / summaries)
    shape     : Optional[tuple] shape of the value; None for synthetic nodes
    grad      : Any             gradient buffer (None until first accumulation)
    in_edges  : edges whose target is this node
    out_edges : edges whose source is this node
    """
    index: int
    ref_count: int = 1
    label: Optional[str] = None
    shape: Optional[Tuple[int, ...]] = None
    grad: Any = None
    in_edges: List[Edge] = field(default_factory=list)
    out_edges: List[Edge] = field(default_factory=list)

    @property
    def is_synthetic(self) -> bool:
        return self.shape is None

    @property
    def callback_in(self) -> Optional[Edge]:
        for e in self.in_edges:
            if e.callback is not None:
                return e
        return None
