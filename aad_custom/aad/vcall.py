# aad/vcall.py
"""
Vectorized method calls with derivative support.

A *vectorized call* evaluates `func(instance, *args)` for every lane of a
receiver collection. Lanes pointing at the same instance are grouped, so the
function runs once per distinct instance on the sliced arguments, and the
per-lane results are scattered back into one output array.

`dispatch_autodiff()` makes such a call differentiable by wrapping it in a
`DiffVCall` custom operation; the user supplies the forward and reverse
derivatives as two more per-instance functions:

    func_fwd(instance, grad_args, *args)  -> gradient of the result
    func_rev(instance, grad_out, *args)   -> tuple with one gradient per arg
"""
from __future__ import annotations
import logging
from typing import Any, Callable, List, Optional

import numpy as np

from .custom import CustomOp, custom
from .core import jit, tree
from .core.config import JitMode
from .core.var import DiffArray

log = logging.getLogger(__name__)


class InstanceArray:
    """
    Receiver collection: one target instance per lane, `None` for masked lanes.
    """

    def __init__(self, instances):
        arr = np.empty(len(instances), dtype=object)
        for i, inst in enumerate(instances):
            arr[i] = inst
        self.instances = arr

    def __len__(self):
        return len(self.instances)

    def __getitem__(self, i):
        return self.instances[i]

    def __repr__(self):
        return f"InstanceArray(lanes={len(self)}, unique={len(self.unique())})"

    def unique(self) -> List[Any]:
        """Distinct non-None instances, in order of first appearance."""
        seen = {}
        for inst in self.instances:
            if inst is not None and id(inst) not in seen:
                seen[id(inst)] = inst
        return list(seen.values())

    def mask(self, inst) -> np.ndarray:
        """Boolean lane mask selecting the lanes that point at `inst`."""
        return np.fromiter((x is inst for x in self.instances), dtype=bool,
                           count=len(self.instances))


def _as_instances(receivers) -> InstanceArray:
    return receivers if isinstance(receivers, InstanceArray) else InstanceArray(receivers)


def _gather(arg: Any, mask: np.ndarray, n: int) -> Any:
    # Per-lane arguments (first dimension == lane count) are sliced, the rest broadcast
    if isinstance(arg, DiffArray):
        if arg.grad_enabled:
            raise ValueError("dispatch(): arguments must be detached; "
                             "use dispatch_autodiff() for differentiable calls")
        if arg.ndim > 0 and arg.shape[0] == n:
            return DiffArray(arg.value[mask])
        return arg
    if isinstance(arg, np.ndarray):
        return arg[mask] if arg.ndim > 0 and arg.shape[0] == n else arg
    if isinstance(arg, tuple):
        items = [_gather(a, mask, n) for a in arg]
        return type(arg)(*items) if hasattr(arg, "_fields") else tuple(items)
    return arg


def _alloc_like(result: Any, n: int) -> Any:
    if result is None:
        return None
    if isinstance(result, tuple):
        items = [_alloc_like(r, n) for r in result]
        return type(result)(*items) if hasattr(result, "_fields") else tuple(items)
    value = result.value if isinstance(result, DiffArray) else np.asarray(result)
    return DiffArray(np.zeros((n,) + value.shape[1:], dtype=value.dtype))


def _scatter(out: Any, result: Any, mask: np.ndarray):
    if out is None:
        return
    if isinstance(out, tuple):
        for o, r in zip(out, result):
            _scatter(o, r, mask)
        return
    value = result.value if isinstance(result, DiffArray) else np.asarray(result)
    out.value[mask] = value


def dispatch(func: Callable, receivers, *args) -> Any:
    """
    Call `func(instance, *sliced_args)` once per distinct receiver instance.

    Returns the per-lane results as detached DiffArrays (or a tuple thereof);
    masked lanes hold zeros. Returns None when every lane is masked or `func`
    returns None.
    """
    receivers = _as_instances(receivers)
    n = len(receivers)
    out = None
    calls = 0
    for inst in receivers.unique():
        mask = receivers.mask(inst)
        result = func(inst, *[_gather(a, mask, n) for a in args])
        if result is None:
            continue
        if out is None:
            out = _alloc_like(result, n)
        _scatter(out, result, mask)
        calls += 1
    log.debug("dispatch(): %s over %d lane(s), %d call(s)",
              getattr(func, "__name__", func), n, calls)
    return out


class DiffVCall(CustomOp):
    """
    Custom operation wrapping one vectorized call.

    Inputs are laid out as (receivers, func, func_fwd, func_rev, *args); the
    call arguments therefore start at input index 4.
    """

    clear_primal = False

    def eval(self, receivers, func, func_fwd, func_rev, *args):
        out = dispatch(func, receivers, *args)
        if out is None:
            # every lane masked
            return DiffArray(np.zeros(len(_as_instances(receivers)), dtype=np.float64))
        return tree.detach(out)

    def _args(self):
        return range(4, len(self.inputs))

    def forward(self):
        receivers, _, func_fwd, _ = self.inputs[:4]
        grad_args = tuple(self.grad_in(i) for i in self._args())
        grad_out = dispatch(func_fwd, receivers, grad_args,
                            *[self.value_in(i) for i in self._args()])
        if grad_out is None:
            return
        if jit.jit_mode() is not JitMode.SYMBOLIC_REQUIRED:
            grad_out = jit.evaluate(grad_out)
        self.set_grad_out(grad_out)

    def backward(self):
        receivers, _, _, func_rev = self.inputs[:4]
        grad_in = dispatch(func_rev, receivers, self.grad_out(),
                           *[self.value_in(i) for i in self._args()])
        if grad_in is None:
            return
        if jit.jit_mode() is not JitMode.SYMBOLIC_REQUIRED:
            grad_in = jit.evaluate(grad_in)
        if not isinstance(grad_in, tuple):
            grad_in = (grad_in,)
        for i, g in zip(self._args(), grad_in):
            self.set_grad_in(i, g)

    def name(self) -> str:
        return "vcall"


def _differentiable(args) -> bool:
    # Receiver attributes are not inspected
    return any(a.is_floating for a in tree.leaves(args))


def dispatch_autodiff(func: Callable, func_fwd: Callable, func_rev: Callable,
                      receivers, *args) -> Optional[Any]:
    """
    Differentiable vectorized call.

    With at least one floating point DiffArray argument the call is recorded
    as a single `DiffVCall` edge on the tape. Otherwise (integer or plain
    arguments) it falls back to a detached `dispatch()` and the tape is never
    touched.

    Float state held only by the receivers (e.g. an attached attribute) does
    not by itself select the differentiable path: pass at least one floating
    point DiffArray argument (a detached one is enough) so that nodes created
    inside `func` are captured as dependencies.
    """
    receivers = _as_instances(receivers)
    if not _differentiable(args):
        return tree.detach(dispatch(func, receivers, *tree.detach(args)))
    return custom(DiffVCall, receivers, func, func_fwd, func_rev, *args)
