# aad/core/__init__.py

"""
Core public API for the AAD package.

This module exposes the minimal set of symbols that users of the AAD framework
should import from `aad.core`.

Exports:
    DiffArray     : Array value that may be attached to an AD tape.
    Tape          : Reference-counted graph of nodes and edges.
    global_tape   : The default tape at import time (a snapshot: inside
                    use_tape() call current_tape() instead).
    current_tape  : The tape new nodes are currently recorded on.
    use_tape      : Context manager to temporarily switch the active tape.
    backward      : Reverse pass (seeding ones where no gradient is set).
    forward       : Forward pass (seeding ones where no gradient is set).
    zero_grads    : Reset all gradients on the active tape.
    grad          : Convenience: gradient of a scalar function at a point.
    value         : Convenience: extract the primal value of a DiffArray.
"""

from .var import DiffArray
from .tape import Tape, global_tape, current_tape, use_tape
from .engine import ADMode, backward, forward, backward_from, forward_from, traverse, zero_grads
from .config import ADConfig, JitMode, use_config, suspend_grad
from .errors import ADError, CustomOpError, TapeConsistencyError
from .seeds import grad, grads, grads_list, value

__all__ = [
    "DiffArray",
    "Tape", "global_tape", "current_tape", "use_tape",
    "ADMode", "backward", "forward", "backward_from", "forward_from", "traverse", "zero_grads",
    "ADConfig", "JitMode", "use_config", "suspend_grad",
    "ADError", "CustomOpError", "TapeConsistencyError",
    "grad", "grads", "grads_list", "value",
]
