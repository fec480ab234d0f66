# aad/core/tree.py
"""
Structure-recursive helpers.

Inputs and outputs of custom operations may be nested containers: tuples
(including namedtuples), lists, dicts and dataclass instances whose leaves are
DiffArrays. Every other leaf (callables, receivers, plain numbers) passes
through these helpers unchanged.
"""
from __future__ import annotations
import copy
import dataclasses
from typing import Any, Callable, Iterator, List, Optional

from .tape import Tape
from .var import DiffArray


def _is_struct(x: Any) -> bool:
    return dataclasses.is_dataclass(x) and not isinstance(x, type)


def tree_map(fn: Callable[[DiffArray], Any], x: Any) -> Any:
    """Apply `fn` to every DiffArray leaf and rebuild the container structure."""
    if isinstance(x, DiffArray):
        return fn(x)
    if isinstance(x, tuple):
        items = [tree_map(fn, v) for v in x]
        return type(x)(*items) if hasattr(x, "_fields") else tuple(items)
    if isinstance(x, list):
        return [tree_map(fn, v) for v in x]
    if isinstance(x, dict):
        return {k: tree_map(fn, v) for k, v in x.items()}
    if _is_struct(x):
        result = copy.copy(x)
        for f in dataclasses.fields(x):
            object.__setattr__(result, f.name, tree_map(fn, getattr(x, f.name)))
        return result
    return x


def leaves(x: Any) -> Iterator[DiffArray]:
    if isinstance(x, DiffArray):
        yield x
    elif isinstance(x, (tuple, list)):
        for v in x:
            yield from leaves(v)
    elif isinstance(x, dict):
        for v in x.values():
            yield from leaves(v)
    elif _is_struct(x):
        for f in dataclasses.fields(x):
            yield from leaves(getattr(x, f.name))


def detach(x: Any) -> Any:
    return tree_map(lambda a: a.detach(), x)


def grad_enabled(x: Any) -> bool:
    return any(a.grad_enabled for a in leaves(x))


def enable_grad(x: Any, tape: Optional[Tape] = None) -> Any:
    """Attach every floating-point leaf in place; integer leaves stay detached."""
    for a in leaves(x):
        if a.is_floating:
            a.enable_grad(tape)
    return x


def diff_vars(x: Any) -> List[int]:
    """Collect the node handles of all attached leaves, in traversal order."""
    return [a.index for a in leaves(x) if a.index > 0]


def borrow(x: Any, keep_primal: bool = True) -> Any:
    """Non-owning copy of `x`; with keep_primal=False only node handles survive."""
    return tree_map(lambda a: a._borrow(keep_primal), x)


def clear_diff_vars(x: Any):
    """Zero the handles of all leaves (without decrementing) and drop their data."""
    for a in leaves(x):
        a._clear_index()


def grad(x: Any) -> Any:
    """Gradient of every leaf as a detached DiffArray; None for non-array leaves."""
    if isinstance(x, DiffArray):
        return DiffArray(x.grad)
    if isinstance(x, tuple):
        items = [grad(v) for v in x]
        return type(x)(*items) if hasattr(x, "_fields") else tuple(items)
    if isinstance(x, list):
        return [grad(v) for v in x]
    if isinstance(x, dict):
        return {k: grad(v) for k, v in x.items()}
    if _is_struct(x):
        result = copy.copy(x)
        for f in dataclasses.fields(x):
            object.__setattr__(result, f.name, grad(getattr(x, f.name)))
        return result
    return None


def accum_grad(x: Any, value: Any):
    """Accumulate `value` (same structure as `x`) into the gradients of `x`."""
    if value is None:
        return
    if isinstance(x, DiffArray):
        if x.grad_enabled:
            x.accum_grad(value)
    elif isinstance(x, (tuple, list)):
        if not isinstance(value, (tuple, list)) or len(value) != len(x):
            raise ValueError(f"accum_grad(): expected a sequence of length {len(x)}, "
                             f"got {type(value).__name__}")
        for xi, vi in zip(x, value):
            accum_grad(xi, vi)
    elif isinstance(x, dict):
        for k, xi in x.items():
            accum_grad(xi, value.get(k))
    elif _is_struct(x):
        for f in dataclasses.fields(x):
            accum_grad(getattr(x, f.name), getattr(value, f.name))
