# aad/core/config.py
"""
Runtime configuration for the AD engine.

A single module-level `global_config` holds the active settings. Use
`use_config(...)` to override fields temporarily:

    with use_config(jit_mode=JitMode.SYMBOLIC_REQUIRED):
        ... traverse ...
"""
from __future__ import annotations
import dataclasses
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum


class JitMode(Enum):
    """Execution regime of the evaluation backend."""
    EAGER = "eager"                      # evaluate every intermediate immediately
    SYMBOLIC = "symbolic"                # defer where possible, evaluation allowed
    SYMBOLIC_REQUIRED = "symbolic_required"  # evaluation must not be forced


@dataclass
class ADConfig:
    """Configuration for tape recording and traversal."""
    # Backend
    jit_mode: JitMode = JitMode.EAGER

    # Traversal
    retain_graph: bool = False  # default for forward()/backward() when not given

    # Recording
    grad_suspended: bool = False  # built-in ops and custom() record no nodes

    # Diagnostics
    record_labels: bool = True  # attach op tags as node labels


global_config = ADConfig()


@contextmanager
def use_config(**overrides):
    """
    Temporarily replace fields of the global configuration.

    Unknown field names raise TypeError (via dataclasses.replace).
    """
    from . import config as _config_mod  # local import to rebind the module global
    prev = _config_mod.global_config
    try:
        _config_mod.global_config = dataclasses.replace(prev, **overrides)
        yield _config_mod.global_config
    finally:
        _config_mod.global_config = prev


@contextmanager
def suspend_grad():
    """
    Suspend gradient recording: inside the block built-in ops and custom()
    return detached results even for gradient-enabled operands.
    """
    with use_config(grad_suspended=True) as cfg:
        yield cfg
