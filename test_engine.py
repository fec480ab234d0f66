"""
Built-in ops, traversal engine, seeds and configuration.
"""

import numpy as np
import pytest

from aad_custom.aad import (
    ADMode, DiffArray, JitMode, TapeConsistencyError, backward, enqueue, forward,
    suspend_grad, traverse, use_config, use_tape, zero_grads,
)
from aad_custom.aad.core import config as config_mod
from aad_custom.aad.core.seeds import grad, grads, grads_list, value
from aad_custom.aad.ops import cos, erf, exp, log, sin, sqrt


def test_detached_arithmetic_records_nothing():
    with use_tape() as t:
        x = DiffArray(2.0)
        y = x * x + 1.0
        assert not y.grad_enabled
        assert y.value == 5.0
        assert len(t) == 0


def test_polynomial_gradient():
    with use_tape() as t:
        x = DiffArray(3.0, requires_grad=True, name="x")
        y = x * x * x - 2.0 * x
        backward(y)
        np.testing.assert_allclose(x.grad, 3 * 9.0 - 2.0)
        assert t.edge_count == 0


def test_transcendental_gradients():
    with use_tape():
        x = DiffArray(np.array([0.5, 1.0, 2.0]), requires_grad=True)
        y = exp(x) + log(x) + sqrt(x) + sin(x) + cos(x) + erf(x)
        backward(y)
        xv = x.value
        expected = (np.exp(xv) + 1.0 / xv + 0.5 / np.sqrt(xv) + np.cos(xv) - np.sin(xv)
                    + 2.0 / np.sqrt(np.pi) * np.exp(-xv ** 2))
        np.testing.assert_allclose(x.grad, expected)


def test_division_and_power():
    with use_tape():
        x = DiffArray(2.0, requires_grad=True)
        p = DiffArray(3.0, requires_grad=True)
        y = x ** p / x
        backward(y)
        # y = x^(p-1): dy/dx = (p-1) x^(p-2), dy/dp = x^(p-1) log(x)
        np.testing.assert_allclose(x.grad, 2.0 * 2.0)
        np.testing.assert_allclose(p.grad, 4.0 * np.log(2.0))


def test_broadcast_gradient_is_reduced_to_operand_shape():
    with use_tape():
        w = DiffArray(2.0, requires_grad=True)
        x = DiffArray(np.array([1.0, 2.0, 3.0]), requires_grad=True)
        y = w * x
        backward(y)
        assert w.grad.shape == ()
        np.testing.assert_allclose(w.grad, 6.0)
        np.testing.assert_allclose(x.grad, [2.0, 2.0, 2.0])


def test_intermediates_are_freed_with_their_handles():
    with use_tape() as t:
        x = DiffArray(1.0, requires_grad=True)
        y = exp(x) * 2.0
        assert len(t) == 3
        del y
        assert len(t) == 1
        assert t.ref_count(x.index) == 1


def test_retain_graph_keeps_edges():
    with use_tape() as t:
        x = DiffArray(2.0, requires_grad=True)
        y = x * 3.0
        backward(y, retain_graph=True)
        assert t.edge_count == 1
        np.testing.assert_allclose(x.grad, 3.0)

        zero_grads()
        backward(y, retain_graph=True)
        np.testing.assert_allclose(x.grad, 3.0)

        # y keeps its seed, so the next pass accumulates on top
        backward(y)
        np.testing.assert_allclose(x.grad, 6.0)
        assert t.edge_count == 0


def test_retain_graph_default_comes_from_config():
    with use_tape() as t, use_config(retain_graph=True):
        x = DiffArray(2.0, requires_grad=True)
        y = x * 3.0
        backward(y)
        assert t.edge_count == 1


def test_forward_mode_propagates_tangents():
    with use_tape():
        x = DiffArray(np.array([1.0, 2.0]), requires_grad=True)
        y = sin(x) * x
        x.set_grad(np.array([1.0, 0.0]))
        traverse_count = forward(x)
        assert traverse_count >= 2
        xv = x.value
        np.testing.assert_allclose(y.grad, [np.cos(xv[0]) * xv[0] + np.sin(xv[0]), 0.0])


def test_traverse_processes_queued_seeds():
    with use_tape() as t:
        x = DiffArray(1.5, requires_grad=True)
        y = x * 2.0
        y.set_grad(1.0)
        enqueue(y)
        n = traverse(t, ADMode.BACKWARD)
        assert n == 2
        np.testing.assert_allclose(x.grad, 2.0)
        assert t.ref_count(y.index) == 1


def test_cycle_is_reported():
    with use_tape() as t:
        a, b = t.new_node(), t.new_node()
        t.add_edge(a, b)
        t.add_edge(b, a)
        t.enqueue(a)
        with pytest.raises(TapeConsistencyError):
            traverse(t)


def test_seeding_a_detached_value_warns(caplog):
    with use_tape():
        y = DiffArray(1.0)
        with caplog.at_level("WARNING"):
            backward(y)
        assert "not attached" in caplog.text


def test_integer_values_cannot_enable_gradients():
    with pytest.raises(TypeError):
        DiffArray(np.arange(3), requires_grad=True)
    with pytest.raises(TypeError):
        DiffArray("abc")


def test_detach_never_mutates():
    with use_tape() as t:
        x = DiffArray(1.0, requires_grad=True)
        d = x.detach()
        assert x.grad_enabled
        assert not d.grad_enabled
        assert d.value is x.value
        assert len(t) == 1


def test_record_labels_can_be_disabled():
    with use_tape() as t:
        x = DiffArray(1.0, requires_grad=True)
        with use_config(record_labels=False):
            y = x * 2.0
        assert t.label(y.index) is None
        z = x * 2.0
        assert t.label(z.index) == "mul"


def test_use_config_restores_and_validates():
    before = config_mod.global_config
    with use_config(jit_mode=JitMode.SYMBOLIC) as cfg:
        assert cfg.jit_mode is JitMode.SYMBOLIC
        assert config_mod.global_config is cfg
    assert config_mod.global_config is before
    with pytest.raises(TypeError):
        with use_config(no_such_field=1):
            pass


def test_seed_helpers():
    np.testing.assert_allclose(grad(lambda x: x * x + 3 * x, 2.0), 7.0)

    g = grads(lambda v: v["a"] * v["b"] + exp(v["a"]), {"a": 1.0, "b": 2.0})
    assert list(g) == ["a", "b"]
    np.testing.assert_allclose(g["a"], 2.0 + np.e)
    np.testing.assert_allclose(g["b"], 1.0)

    gl = grads_list(lambda xs: xs[0] * xs[0] + 3 * xs[1], [2.0, 4.0])
    np.testing.assert_allclose(gl, [4.0, 3.0])

    assert value(DiffArray(5.0)) == 5.0
    assert value(5.0) == 5.0


def test_seed_helpers_require_scalar_output():
    with pytest.raises(ValueError):
        grad(lambda x: x * DiffArray(np.ones(3)), 1.0)


def test_set_grad_enabled_toggles_attachment():
    with use_tape() as t:
        x = DiffArray(2.0, requires_grad=True)
        assert len(t) == 1
        x.set_grad_enabled(False)
        assert not x.grad_enabled
        assert len(t) == 0
        np.testing.assert_allclose(x.value, 2.0)

        x.set_grad_enabled(True)
        assert x.grad_enabled
        assert len(t) == 1
        backward(x * 3.0)
        np.testing.assert_allclose(x.grad, 3.0)


def test_suspend_grad_detaches_builtin_ops():
    before = config_mod.global_config
    with use_tape() as t:
        x = DiffArray(2.0, requires_grad=True)
        with suspend_grad():
            y = exp(x) * 2.0
        assert not y.grad_enabled
        np.testing.assert_allclose(y.value, 2.0 * np.exp(2.0))
        assert len(t) == 1
        z = x * 2.0
        assert z.grad_enabled
    assert config_mod.global_config is before
