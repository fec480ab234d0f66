# aad/core/jit.py
"""
Thin facade over the evaluation backend.

The numpy backend is eager, so "evaluating" a value only materializes it as a
contiguous array. The facade still counts forced evaluations so that callers
running under `JitMode.SYMBOLIC_REQUIRED` can verify they never forced one.
"""
from __future__ import annotations
import dataclasses
import logging
from typing import Any

import numpy as np

from . import config as config_mod
from .config import JitMode

log = logging.getLogger(__name__)


@dataclasses.dataclass
class BackendStats:
    evaluations: int = 0  # number of evaluate() calls that materialized data

    def reset(self):
        self.evaluations = 0


stats = BackendStats()


def jit_mode() -> JitMode:
    """Return the active execution mode."""
    return config_mod.global_config.jit_mode


def evaluate(value: Any) -> Any:
    """
    Force evaluation of `value` (recursively for tuples/lists/dicts).

    Raises RuntimeError when called under JitMode.SYMBOLIC_REQUIRED, since
    forcing evaluation would break deferred kernel construction.
    """
    if jit_mode() is JitMode.SYMBOLIC_REQUIRED:
        raise RuntimeError("evaluate(): forcing evaluation is not allowed in "
                           "symbolic-required mode")
    stats.evaluations += 1
    return _materialize(value)


def _materialize(value):
    from .var import DiffArray
    if isinstance(value, DiffArray):
        if value.has_primal:
            value._value = np.ascontiguousarray(value._value)
        return value
    if isinstance(value, np.ndarray):
        return np.ascontiguousarray(value)
    if isinstance(value, tuple):
        return tuple(_materialize(v) for v in value)
    if isinstance(value, list):
        return [_materialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _materialize(v) for k, v in value.items()}
    return value
