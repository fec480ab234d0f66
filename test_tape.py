"""
Tape bookkeeping: reference counting, edge ownership, dependency scopes.
"""

import numpy as np
import pytest

from aad_custom.aad.core.errors import TapeConsistencyError
from aad_custom.aad.core.node import DiffCallback
from aad_custom.aad.core.tape import Tape, fit_to_shape, use_tape, current_tape
from aad_custom.aad.core.var import DiffArray


class Recording(DiffCallback):
    def __init__(self):
        self.released = 0

    def forward(self):
        pass

    def backward(self):
        pass

    def release(self):
        self.released += 1


def test_new_node_starts_with_one_reference():
    t = Tape()
    a = t.new_node(label="a")
    assert a > 0
    assert t.ref_count(a) == 1
    assert t.label(a) == "a"
    assert len(t) == 1


def test_handles_are_never_reused():
    t = Tape()
    a = t.new_node()
    t.dec_ref(a)
    b = t.new_node()
    assert b != a
    assert not t.has_node(a)


def test_edge_owns_reference_on_source():
    t = Tape()
    a = t.new_node()
    b = t.new_node()
    t.add_edge(a, b)
    assert t.ref_count(a) == 2
    assert t.ref_count(b) == 1
    assert t.edge_count == 1

    # Dropping the caller's handle on `a` leaves it alive through the edge
    t.dec_ref(a)
    assert t.has_node(a)

    # Freeing `b` removes its incoming edge and with it the last ref on `a`
    t.dec_ref(b)
    assert len(t) == 0
    assert t.edge_count == 0


def test_long_chain_teardown_is_iterative():
    t = Tape()
    prev = t.new_node()
    for _ in range(5000):
        n = t.new_node()
        t.add_edge(prev, n)
        t.dec_ref(prev)
        prev = n
    assert len(t) == 5001
    t.dec_ref(prev)
    assert len(t) == 0
    assert t.edge_count == 0


def test_unknown_handle_raises():
    t = Tape()
    with pytest.raises(TapeConsistencyError):
        t.dec_ref(42)
    with pytest.raises(TapeConsistencyError):
        t.inc_ref(42)


def test_handle_zero_is_ignored():
    t = Tape()
    t.inc_ref(0)
    t.dec_ref(0)
    t.enqueue(0)
    assert t.take_queue() == []


def test_self_edge_rejected():
    t = Tape()
    a = t.new_node()
    with pytest.raises(TapeConsistencyError):
        t.add_edge(a, a)


def test_weight_and_callback_are_exclusive():
    t = Tape()
    a, b = t.new_node(), t.new_node()
    with pytest.raises(ValueError):
        t.add_edge(a, b, callback=Recording(), weight=1.0)


def test_at_most_one_callback_edge_per_target():
    t = Tape()
    a, b, c = t.new_node(), t.new_node(), t.new_node()
    t.add_edge(a, c, callback=Recording())
    with pytest.raises(TapeConsistencyError):
        t.add_edge(b, c, callback=Recording())
    assert t.edge_count == 1


def test_callback_released_exactly_once_on_teardown():
    t = Tape()
    a, b = t.new_node(), t.new_node()
    cb = Recording()
    t.add_edge(a, b, callback=cb)
    t.dec_ref(a)
    t.dec_ref(b)
    assert cb.released == 1
    assert len(t) == 0


def test_remove_edge_releases_callback():
    t = Tape()
    a, b = t.new_node(), t.new_node()
    cb = Recording()
    edge = t.add_edge(a, b, callback=cb)
    t.remove_edge(edge)
    assert cb.released == 1
    assert edge.callback is None
    assert t.ref_count(a) == 1
    assert t.edge_count == 0


def test_freeing_node_with_outgoing_edges_is_an_error():
    t = Tape()
    a, b = t.new_node(), t.new_node()
    t.add_edge(a, b)
    # Force the inconsistent state: the edge's reference is stolen
    t.node(a).ref_count = 1
    with pytest.raises(TapeConsistencyError):
        t.dec_ref(a)


def test_gradient_buffers():
    t = Tape()
    a = t.new_node(shape=(3,))
    assert t.grad(a) is None
    t.accum_grad(a, 1.0)
    t.accum_grad(a, np.array([1.0, 2.0, 3.0]))
    np.testing.assert_allclose(t.grad(a), [2.0, 3.0, 4.0])
    t.set_grad(a, np.zeros(3))
    np.testing.assert_allclose(t.grad(a), 0.0)
    t.clear_grad(a)
    assert t.grad(a) is None


def test_fit_to_shape_reduces_broadcast_axes():
    np.testing.assert_allclose(fit_to_shape(np.ones(4), ()), 4.0)
    np.testing.assert_allclose(fit_to_shape(np.ones((2, 3)), (1, 3)), [[2.0, 2.0, 2.0]])
    np.testing.assert_allclose(fit_to_shape(2.0, (2,)), [2.0, 2.0])


def test_dependency_scope_records_tracked_nodes_only():
    t = Tape()
    with t.capture_dependencies() as deps:
        a = t.new_node(dependency=True)
        b = t.new_node()
        assert t.dependency_count() == 1
    assert list(deps) == [a]
    assert t.ref_count(a) == 2
    assert t.ref_count(b) == 1
    deps.release()
    assert t.ref_count(a) == 1
    assert len(deps) == 0


def test_dependency_scopes_nest_without_clearing_outer():
    t = Tape()
    with t.capture_dependencies() as outer:
        a = t.new_node(dependency=True)
        with t.capture_dependencies() as inner:
            b = t.new_node(dependency=True)
            assert t.dependency_count() == 1
        assert t.dependency_count() == 1
        c = t.new_node(dependency=True)
    assert list(inner) == [b]
    assert list(outer) == [a, c]
    inner.release()
    outer.release()
    for index in (a, b, c):
        assert t.ref_count(index) == 1


def test_clear_dependencies_drops_references():
    t = Tape()
    with t.capture_dependencies() as deps:
        a = t.new_node(dependency=True)
        t.dec_ref(a)
        t.clear_dependencies()
        assert t.dependency_count() == 0
    assert len(deps) == 0
    assert not t.has_node(a)


def test_no_scope_means_no_tracking():
    t = Tape()
    a = t.new_node(dependency=True)
    assert t.ref_count(a) == 1
    assert t.dependency_count() == 0


def test_reset_makes_outstanding_handles_inert():
    with use_tape() as t:
        x = DiffArray(1.0, requires_grad=True)
        assert len(t) == 1
        t.reset()
        assert len(t) == 0
        assert t.epoch == 1
        np.testing.assert_allclose(x.grad, 0.0)
        del x  # must not raise
        assert len(t) == 0


def test_use_tape_restores_previous_tape():
    before = current_tape()
    with use_tape() as t:
        assert current_tape() is t
        assert t is not before
    assert current_tape() is before


def test_empty_tape_is_still_used_when_passed_explicitly():
    t = Tape()
    x = DiffArray(2.0, requires_grad=True, tape=t)
    assert x.tape is t
    assert len(t) == 1
