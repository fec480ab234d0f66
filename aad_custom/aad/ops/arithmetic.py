# aad/ops/arithmetic.py
import numpy as np
from ..core.var import DiffArray
from ..core import config as config_mod  # module access so use_config() overrides apply


def _as_diff(x):
    """Ensure x is a DiffArray; otherwise wrap it as a detached constant."""
    return x if isinstance(x, DiffArray) else DiffArray(x)


def _record(tag, value, parents):
    """
    Generic primitive recording:
      - wraps the primal `value` as the result
      - if any parent carries gradients, allocates a result node and pushes one
        weighted edge per attached parent with its local partial ∂out/∂parent
    `parents` is a list of (DiffArray, local_partial) pairs.
    """
    active = [(p, a) for p, a in parents if p.grad_enabled]
    if not active or config_mod.global_config.grad_suspended:
        return DiffArray(value)

    tape = active[0][0].tape
    for p, _ in active[1:]:
        if p.tape is not tape:
            raise ValueError(f"{tag}: operands are recorded on different tapes")

    out = DiffArray(np.asarray(value, dtype=np.float64))
    label = tag if config_mod.global_config.record_labels else None
    index = tape.new_node(label=label, shape=out.shape, dependency=True)
    out._attach(tape, index)
    for p, a in active:
        tape.add_edge(p.index, index, weight=np.asarray(a, dtype=np.float64))
    return out


def _binary(x, y, f, dfdx, dfdy, tag):
    """
    Generic binary primitive:
      - computes out.value = f(x.value, y.value)
      - records local partials (∂out/∂x, ∂out/∂y) on attached operands
    """
    x = _as_diff(x)
    y = _as_diff(y)
    xv, yv = x.value, y.value
    parents = []
    if x.grad_enabled:
        parents.append((x, dfdx(xv, yv)))
    if y.grad_enabled:
        parents.append((y, dfdy(xv, yv)))
    return _record(tag, f(xv, yv), parents)


def add(x, y): return _binary(x, y, lambda a, b: a + b, lambda a, b: 1.0, lambda a, b: 1.0, "add")
def sub(x, y): return _binary(x, y, lambda a, b: a - b, lambda a, b: 1.0, lambda a, b: -1.0, "sub")
def mul(x, y): return _binary(x, y, lambda a, b: a * b, lambda a, b: b, lambda a, b: a, "mul")
def div(x, y): return _binary(x, y, lambda a, b: a / b, lambda a, b: 1.0 / b, lambda a, b: -a / np.square(b), "div")


def neg(x):
    x = _as_diff(x)
    return _record("neg", -x.value, [(x, -1.0)] if x.grad_enabled else [])


def pow(x, y):
    """
    Power:
      out = x ** y

    Local partials:
      ∂out/∂x = y * x^(y-1)
      ∂out/∂y = x^y * log(x)        (only defined for x > 0; zero elsewhere)
    """
    x = _as_diff(x)
    y = _as_diff(y)
    xv, pv = x.value, y.value
    out = np.power(xv.astype(np.float64) if x.grad_enabled else xv, pv)

    parents = []
    if x.grad_enabled:
        parents.append((x, pv * np.power(xv, pv - 1.0)))
    if y.grad_enabled:
        safe = np.where(xv > 0, xv, 1.0)
        parents.append((y, np.where(xv > 0, out * np.log(safe), 0.0)))
    return _record("pow", out, parents)
