# aad/ops/__init__.py

# Convenience re-exports so users can do: from aad.ops import mul, exp, ...
from .arithmetic import add, sub, mul, div, neg, pow
from .transcendental import exp, log, sqrt, sin, cos, erf

__all__ = [
    "add", "sub", "mul", "div", "neg", "pow",
    "exp", "log", "sqrt", "sin", "cos", "erf",
]
