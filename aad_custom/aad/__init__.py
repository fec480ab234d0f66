# aad/__init__.py
# Automatic differentiation with custom operations and vectorized calls
# `global_tape` is the default tape at import time; use current_tape() to get
# the tape active inside use_tape().

from .core.var import DiffArray
from .core.tape import Tape, global_tape, current_tape, use_tape
from .core.engine import (
    ADMode,
    backward,
    forward,
    backward_from,
    forward_from,
    enqueue,
    traverse,
    zero_grads,
)
from .core.config import ADConfig, JitMode, use_config, suspend_grad
from .core.errors import ADError, CustomOpError, TapeConsistencyError

# Custom operations
from .custom import CustomOp, custom
from .vcall import InstanceArray, DiffVCall, dispatch, dispatch_autodiff

__all__ = [
    # Core
    'DiffArray',
    'Tape',
    'global_tape',
    'current_tape',
    'use_tape',
    # Engine
    'ADMode',
    'backward',
    'forward',
    'backward_from',
    'forward_from',
    'enqueue',
    'traverse',
    'zero_grads',
    # Config / errors
    'ADConfig',
    'JitMode',
    'use_config',
    'suspend_grad',
    'ADError',
    'CustomOpError',
    'TapeConsistencyError',
    # Custom operations
    'CustomOp',
    'custom',
    'InstanceArray',
    'DiffVCall',
    'dispatch',
    'dispatch_autodiff',
]
