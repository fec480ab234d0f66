# aad/core/var.py
from __future__ import annotations
import logging
import numbers
from typing import Any, Optional

import numpy as np

from .errors import CustomOpError
from .tape import Tape, current_tape

log = logging.getLogger(__name__)


class DiffArray:
    """
    Array value that may be attached to an AD tape.

    Attributes
    ----------
    value : np.ndarray
        Primal value. Inside a CustomOp with `clear_primal=True` the stored
        copies keep only their node handle and `value` raises.
    index : int
        Tape node handle; 0 when the value is detached.
    tape : Tape
        Tape the node lives on (the active tape for detached values).
    name : Optional[str]
        Optional debug name, used as node label when gradients are enabled.

    Handles come in two flavours. An *owning* handle holds one reference on its
    node and drops it when the array is garbage collected. A *borrowed* handle
    (created by `_borrow`) holds none; it is only valid while something else
    keeps the node alive, and is zeroed rather than decremented on release.
    """

    __array_priority__ = 1000  # make ndarray binary ops defer to DiffArray
    __slots__ = ("_value", "_shape", "_dtype", "_index", "_tape", "_owned", "_epoch",
                 "name", "__weakref__")

    def __init__(self, value: Any, *, requires_grad: bool = False, tape: Optional[Tape] = None,
                 name: Optional[str] = None):
        if isinstance(value, DiffArray):
            value = value.value
        if not isinstance(value, (numbers.Number, np.generic, list, tuple, np.ndarray)):
            raise TypeError(
                f"DiffArray only accepts numeric types (int, float, list, tuple, ndarray), "
                f"but got {type(value)}"
            )
        arr = np.asarray(value)
        if arr.dtype.kind not in "biuf":
            raise TypeError(f"DiffArray: unsupported dtype {arr.dtype}")
        self._value = arr
        self._shape = arr.shape
        self._dtype = arr.dtype
        self._index = 0
        self._tape = tape
        self._owned = False
        self._epoch = 0
        self.name = name
        if requires_grad:
            self.enable_grad()

    # -------------------------------------------------------------- internals
    @classmethod
    def _from_parts(cls, value, shape, dtype, tape, index, owned, name=None) -> "DiffArray":
        obj = cls.__new__(cls)
        obj._value = value
        obj._shape = shape
        obj._dtype = dtype
        obj._tape = tape
        obj._index = index
        obj._owned = owned
        obj._epoch = tape.epoch if tape is not None else 0
        obj.name = name
        return obj

    def _attach(self, tape: Tape, index: int):
        """Take ownership of a freshly allocated node (refcount already 1)."""
        self._tape = tape
        self._index = index
        self._owned = True
        self._epoch = tape.epoch

    def _borrow(self, keep_primal: bool = True) -> "DiffArray":
        """Non-owning copy sharing the node handle, optionally without primal data."""
        return DiffArray._from_parts(self._value if keep_primal else None, self._shape,
                                     self._dtype, self._tape, self._index, False, self.name)

    def _clear_index(self):
        """Zero the handle and drop primal data; borrowed handles are never decremented."""
        if self._owned:
            self._release()
        self._index = 0
        self._value = None

    def _live(self) -> bool:
        return (self._index != 0 and self._tape is not None
                and self._tape.epoch == self._epoch and self._tape.has_node(self._index))

    def _release(self):
        if self._owned and self._index != 0 and self._tape is not None \
                and self._tape.epoch == self._epoch:
            self._tape.dec_ref(self._index)
        self._index = 0
        self._owned = False

    def __del__(self):
        if getattr(self, "_owned", False):
            self._release()

    # ------------------------------------------------------------- properties
    @property
    def value(self) -> np.ndarray:
        if self._value is None:
            raise CustomOpError("DiffArray: primal value was cleared (clear_primal=True); "
                                "only the node handle is available")
        return self._value

    @property
    def has_primal(self) -> bool:
        return self._value is not None

    @property
    def index(self) -> int:
        return self._index

    @property
    def tape(self) -> Tape:
        return self._tape if self._tape is not None else current_tape()

    @property
    def grad_enabled(self) -> bool:
        return self._index != 0

    @property
    def shape(self):
        return self._shape

    @property
    def dtype(self):
        return self._dtype

    @property
    def ndim(self) -> int:
        return len(self._shape)

    @property
    def size(self) -> int:
        return int(np.prod(self._shape, dtype=np.int64))

    @property
    def is_floating(self) -> bool:
        return self._dtype.kind == "f"

    def __len__(self):
        if not self._shape:
            raise TypeError("len() of a 0-d DiffArray")
        return self._shape[0]

    def __float__(self):
        return float(self.value)

    def __repr__(self):
        body = repr(self._value) if self._value is not None else f"<cleared {self._shape}>"
        return f"DiffArray({body}, index={self._index}, name={self.name!r})"

    def numpy(self) -> np.ndarray:
        return np.array(self.value, copy=True)

    # --------------------------------------------------------------- autodiff
    def detach(self) -> "DiffArray":
        """Same primal data, no node handle. Never mutates `self`."""
        return DiffArray._from_parts(self._value, self._shape, self._dtype, None, 0, False,
                                     self.name)

    def enable_grad(self, tape: Optional[Tape] = None) -> "DiffArray":
        """Attach this value to a new tape node (no-op if already attached)."""
        if self._index != 0:
            return self
        if not self.is_floating:
            raise TypeError(f"enable_grad(): gradients require a floating point dtype, "
                            f"got {self._dtype}")
        tape = tape or self._tape or current_tape()
        index = tape.new_node(label=self.name, shape=self._shape, dependency=True)
        self._attach(tape, index)
        return self

    def set_grad_enabled(self, value: bool) -> "DiffArray":
        """
        Enable or disable gradients in place. Disabling drops this array's
        reference on its node; the primal data is kept.
        """
        if value:
            return self.enable_grad()
        if self._owned:
            self._release()
        self._index = 0
        return self

    @property
    def grad(self) -> np.ndarray:
        """Current gradient (zeros when none has been accumulated)."""
        g = self._tape.grad(self._index) if self._live() else None
        if g is None:
            return np.zeros(self._shape, dtype=np.float64)
        return g

    def set_grad(self, value: Any):
        if not self._live():
            log.warning("set_grad(): value %r is not attached to the AD graph", self.name)
            return
        self._tape.set_grad(self._index, _raw(value))

    def accum_grad(self, value: Any):
        if not self._live():
            # Borrowed output handles may outlive a released output node.
            log.debug("accum_grad(): skipping detached or released value %r", self.name)
            return
        self._tape.accum_grad(self._index, _raw(value))

    # ---------------------------------------------------------------- operators
    def __add__(self, other):
        from ..ops.arithmetic import add
        return add(self, other)

    def __radd__(self, other):
        from ..ops.arithmetic import add
        return add(other, self)

    def __sub__(self, other):
        from ..ops.arithmetic import sub
        return sub(self, other)

    def __rsub__(self, other):
        from ..ops.arithmetic import sub
        return sub(other, self)

    def __mul__(self, other):
        from ..ops.arithmetic import mul
        return mul(self, other)

    def __rmul__(self, other):
        from ..ops.arithmetic import mul
        return mul(other, self)

    def __truediv__(self, other):
        from ..ops.arithmetic import div
        return div(self, other)

    def __rtruediv__(self, other):
        from ..ops.arithmetic import div
        return div(other, self)

    def __neg__(self):
        from ..ops.arithmetic import neg
        return neg(self)

    def __pow__(self, other):
        from ..ops.arithmetic import pow
        return pow(self, other)

    def __rpow__(self, other):
        from ..ops.arithmetic import pow
        return pow(other, self)


def _raw(value: Any) -> Any:
    """Unwrap a DiffArray to its primal ndarray; pass other values through."""
    return value.value if isinstance(value, DiffArray) else value
