# aad/ops/transcendental.py
import numpy as np
from scipy.special import erf as scipy_erf

from .arithmetic import _as_diff, _record


def exp(x):
    x = _as_diff(x)
    ex = np.exp(x.value)
    return _record("exp", ex, [(x, ex)] if x.grad_enabled else [])


def log(x):
    x = _as_diff(x)
    return _record("log", np.log(x.value), [(x, 1.0 / x.value)] if x.grad_enabled else [])


def sqrt(x):
    x = _as_diff(x)
    s = np.sqrt(x.value)
    return _record("sqrt", s, [(x, 0.5 / s)] if x.grad_enabled else [])


def sin(x):
    x = _as_diff(x)
    return _record("sin", np.sin(x.value), [(x, np.cos(x.value))] if x.grad_enabled else [])


def cos(x):
    x = _as_diff(x)
    return _record("cos", np.cos(x.value), [(x, -np.sin(x.value))] if x.grad_enabled else [])


def erf(x):
    """
    Error function: erf(x) = (2/√π) ∫₀ˣ e^(-t²) dt

    Derivative: d/dx erf(x) = (2/√π) * e^(-x²)
    """
    x = _as_diff(x)
    erf_val = scipy_erf(x.value)
    parents = []
    if x.grad_enabled:
        parents.append((x, (2.0 / np.sqrt(np.pi)) * np.exp(-x.value ** 2)))
    return _record("erf", erf_val, parents)
