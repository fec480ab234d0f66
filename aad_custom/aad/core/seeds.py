# aad/core/seeds.py

#-----------------------------------------------------------------------------
# We "plant" a seed (dy/dy = 1) at the scalar output and let gradients grow
# backwards through the tape.
#-----------------------------------------------------------------------------
from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List, Union
import numpy as np

from .var import DiffArray
from .tape import use_tape
from .engine import backward


def value(x: Any) -> Any:
    """Return the primal value of a DiffArray; pass through plain numbers unchanged."""
    return x.value if isinstance(x, DiffArray) else x


def _ensure_diff(v: Any, *, name: str) -> DiffArray:
    """Wrap a plain value as a gradient-enabled float64 DiffArray."""
    if isinstance(v, DiffArray):
        return v.enable_grad()
    return DiffArray(np.asarray(v, dtype=np.float64), requires_grad=True, name=name)


def _run_scalar(y: Any, who: str) -> DiffArray:
    if not isinstance(y, DiffArray):
        y = DiffArray(y, name="y")
    # Expect scalar output
    if y.shape != ():
        raise ValueError(f"{who} expects scalar output.")
    backward(y, retain_graph=False)
    return y


# ----------------------------- single-input grad ----------------------------- #
def grad(f: Callable[[DiffArray], DiffArray],
         x0: Union[float, np.ndarray]) -> np.ndarray:
    """
    Gradient of a scalar-output function y=f(x) at x0 (single input).
    Runs one reverse pass within a fresh, isolated tape.
    """
    with use_tape():
        x = _ensure_diff(x0, name="x")
        _run_scalar(f(x), "grad(f, x0)")
        return x.grad


# ----------------------------- multi-input grads ----------------------------- #
def grads(f: Callable[[Dict[str, DiffArray]], DiffArray],
          inputs: Dict[str, Union[float, np.ndarray]]) -> Dict[str, np.ndarray]:
    """
    Gradient of a scalar-output function y=f(vars) w.r.t. ALL inputs (dict form).
    Performs ONE reverse pass to obtain all ∂y/∂var simultaneously.

    Parameters
    ----------
    f       : function taking a dict {name: DiffArray} and returning a scalar DiffArray
    inputs  : dict {name: numeric}

    Returns
    -------
    dict {name: ndarray}  # gradients in the same key order as `inputs`
    """
    with use_tape():
        vars_ad = {k: _ensure_diff(v, name=k) for k, v in inputs.items()}
        _run_scalar(f(vars_ad), "grads(f, inputs)")
        return {k: vars_ad[k].grad for k in inputs.keys()}


def grads_list(f: Callable[[List[DiffArray]], DiffArray],
               x0_list: Iterable[Union[float, np.ndarray]]) -> List[np.ndarray]:
    """
    Same as grads(), but the inputs are provided as a list and the result is a list
    of partials in the same order.

    Example
    -------
    f = lambda xs: xs[0]*xs[0] + 3*xs[1]
    grads_list(f, [2.0, 4.0]) -> [4.0, 3.0]
    """
    with use_tape():
        xs = [_ensure_diff(v, name=f"x{i}") for i, v in enumerate(x0_list)]
        _run_scalar(f(xs), "grads_list(f, x0_list)")
        return [x.grad for x in xs]
