# aad/custom.py
"""
Facilities to implement custom differentiable operations.

A custom operation evaluates its primal result on detached inputs and supplies
its own forward/backward derivative logic. `custom()` splices it into the tape
as a single callback edge:

    inputs ──► [name [in]] ══callback══► [name [out]] ──► outputs

The synthetic "[in]" / "[out]" aggregation nodes are only created when the
number of attached inputs (resp. outputs) differs from one, so the callback
edge itself is always 1-to-1.

Example
-------
    class Square(CustomOp):
        clear_primal = False

        def eval(self, x):
            return x * x

        def forward(self):
            self.set_grad_out(2 * self.value_in(0) * self.grad_in(0))

        def backward(self):
            self.set_grad_in(0, 2 * self.value_in(0) * self.grad_out())

        def name(self):
            return "square"

    y = custom(Square, x)
"""
from __future__ import annotations
import logging
from abc import abstractmethod
from typing import Any, Optional, Tuple, Type

from .core import config as config_mod
from .core import tree
from .core.errors import CustomOpError, TapeConsistencyError
from .core.node import DiffCallback
from .core.tape import Tape, current_tape

log = logging.getLogger(__name__)


class CustomOp(DiffCallback):
    """
    Base class of user-defined differentiable operations.

    Subclasses implement `eval`, `forward`, `backward` and `name`. After a
    successful registration the instance holds borrowed (non-owning) copies of
    its inputs and output; the tape edge it is attached to owns the instance.

    Class attributes
    ----------------
    clear_primal : bool
        When True (default) the stored inputs/output keep only their node
        handles, which saves memory when the derivative does not need primal
        values. Set to False to make `value_in()` available.
    """

    clear_primal: bool = True

    def __init__(self):
        self._inputs: Optional[Tuple[Any, ...]] = None
        self._output: Any = None

    @abstractmethod
    def eval(self, *inputs):
        """
        Evaluate the operation in primal mode. The inputs are detached from the
        AD graph, and the output *must* also be detached.
        """
        ...

    @abstractmethod
    def forward(self):
        """Forward-mode derivative: read grad_in(), accumulate with set_grad_out()."""
        ...

    @abstractmethod
    def backward(self):
        """Reverse-mode derivative: read grad_out(), accumulate with set_grad_in()."""
        ...

    @abstractmethod
    def name(self) -> str:
        """Descriptive name (used for labels in GraphViz output)."""
        ...

    # -------------------------------------------------------------- accessors
    @property
    def inputs(self) -> Tuple[Any, ...]:
        return self._inputs

    @property
    def output(self) -> Any:
        return self._output

    def grad_enabled_in(self, index: int = 0) -> bool:
        """Check if gradients are enabled for input argument `index`."""
        return tree.grad_enabled(self._inputs[index])

    def grad_in(self, index: int = 0) -> Any:
        """Gradient of input argument `index` (forward mode)."""
        return tree.grad(self._inputs[index])

    def value_in(self, index: int = 0) -> Any:
        """Primal value of input argument `index`; requires clear_primal=False."""
        if self.clear_primal:
            raise CustomOpError(f"{self.name()}: value_in() requires clear_primal=False")
        return tree.detach(self._inputs[index])

    def grad_out(self) -> Any:
        """Gradient of the output (reverse mode)."""
        return tree.grad(self._output)

    def set_grad_in(self, index: int, value: Any):
        """Accumulate a gradient into input argument `index` (reverse mode)."""
        tree.accum_grad(self._inputs[index], value)

    def set_grad_out(self, value: Any):
        """Accumulate a gradient into the output (forward mode)."""
        tree.accum_grad(self._output, value)

    def release(self):
        # Handles are borrowed: zero them, never decrement.
        if self._output is not None:
            tree.clear_diff_vars(self._output)
        if self._inputs is not None:
            tree.clear_diff_vars(self._inputs)
        self._inputs = None
        self._output = None


def _find_tape(inputs) -> Optional[Tape]:
    for a in tree.leaves(inputs):
        if a.grad_enabled:
            return a.tape
    return None


def custom(op_cls: Type[CustomOp], *inputs, tape: Optional[Tape] = None):
    """
    Evaluate the custom operation `op_cls` on `inputs` and record it on the tape.

    Returns the detached output when no input (and no node created during
    eval) carries gradients; otherwise the output is attached and the operation
    is registered as one callback edge.
    Inside `suspend_grad()` nothing is recorded and the detached output is
    returned.
    """
    tape = tape or _find_tape(inputs) or current_tape()
    for a in tree.leaves(inputs):
        if a.grad_enabled and a.tape is not tape:
            raise ValueError(f"custom(): inputs of {op_cls.__name__} are recorded on "
                             f"different tapes")
    op = op_cls()

    if config_mod.global_config.grad_suspended:
        return op.eval(*tree.detach(inputs))

    deps = tape.capture_dependencies()
    try:
        with deps:
            output = op.eval(*tree.detach(inputs))

        if tree.grad_enabled(output):
            raise CustomOpError(
                f"custom(): the return value of {op.name()}.eval() was attached to "
                f"the AD graph. This is not allowed.")

        # Explicit inputs first, then nodes created as a side effect of eval()
        diff_vars_in = tree.diff_vars(inputs) + list(deps)
        if not diff_vars_in:
            return output

        # Gradients are enabled for at least one input, mark outputs
        tree.enable_grad(output, tape)
        op._inputs = tree.borrow(inputs, keep_primal=not op.clear_primal)
        op._output = tree.borrow(output, keep_primal=not op.clear_primal)

        diff_vars_out = tree.diff_vars(output)
        if not diff_vars_out:
            op.release()
            raise TapeConsistencyError(
                f"custom(): {op.name()}.eval() produced no floating point DiffArray "
                f"output that could be attached to the AD graph")

        _connect(tape, op, diff_vars_in, diff_vars_out)
        return output
    finally:
        deps.release()


def _connect(tape: Tape, op: CustomOp, diff_vars_in, diff_vars_out):
    name = op.name()

    # Create a dummy node in case the branch-in factor is != 1
    if len(diff_vars_in) == 1:
        in_var = diff_vars_in[0]
        tape.inc_ref(in_var)
    else:
        in_var = tape.new_node(label=f"{name} [in]")
        for index in diff_vars_in:
            tape.add_edge(index, in_var)

    # Create a dummy node in case the branch-out factor is != 1
    if len(diff_vars_out) == 1:
        out_var = diff_vars_out[0]
        tape.inc_ref(out_var)
    else:
        out_var = tape.new_node(label=f"{name} [out]")
        for index in diff_vars_out:
            tape.add_edge(out_var, index)

    # Connect the two endpoints using a custom edge with a callback
    tape.add_edge(in_var, out_var, callback=op)
    tape.dec_ref(out_var)
    tape.dec_ref(in_var)
    log.debug("custom(): registered %s (%d input node(s) -> %d output node(s))",
              name, len(diff_vars_in), len(diff_vars_out))
