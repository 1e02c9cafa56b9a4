"""
Pytest configuration for torch-criterion-nodes tests.

IMPORTANT: CPU-ONLY TESTING
---------------------------
This test suite is designed to run on CPU only. Criterion nodes run on any
device torch supports, but CI has no GPU, so tests that need CUDA are marked
``requires_cuda`` and skipped when it is not available.

Gradient checks run in float64 so that central differences with a small
step are accurate to well below the test tolerances.
"""

import pytest
import torch

from criterion_nodes import MinibatchLayout


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_cuda: mark test as requiring CUDA (will be skipped if not available)",
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (finite-difference sweeps over every entry)",
    )


@pytest.fixture(autouse=True)
def ensure_cpu_default():
    """
    Fixture that runs before each test to ensure we're using CPU.

    This is a documentation/verification fixture - it doesn't force CPU
    but fails if tensors are created on another device by default.
    """
    assert torch.tensor([1.0]).device.type == "cpu", "Default device should be CPU"
    yield


@pytest.fixture
def cpu_device():
    """Fixture providing CPU device for explicit device specification."""
    return torch.device("cpu")


@pytest.fixture
def skip_if_no_cuda():
    """Fixture to skip tests that require CUDA."""
    if not torch.cuda.is_available():
        pytest.skip("CUDA not available")


# =============================================================================
# Gradient helpers
# =============================================================================


def _numerical_gradient(node, input_index, eps=1e-6):
    """Central-difference gradient of ``node``'s loss w.r.t. one input's value.

    Perturbs the input's value in place, one entry at a time, and restores it.
    """
    value = node.inputs[input_index].value
    numerical = torch.zeros_like(value)
    flat = value.view(-1)
    flat_numerical = numerical.view(-1)
    for i in range(flat.numel()):
        orig = flat[i].item()

        flat[i] = orig + eps
        node.evaluate_forward()
        f_plus = node.value.item()

        flat[i] = orig - eps
        node.evaluate_forward()
        f_minus = node.value.item()

        flat[i] = orig  # restore
        flat_numerical[i] = (f_plus - f_minus) / (2 * eps)

    node.evaluate_forward()
    return numerical


def _analytic_gradient(node, input_index, seed=1.0):
    """Gradient added by ``compute_input_gradient`` into a zeroed input gradient."""
    node.evaluate_forward()
    node.gradient = torch.full((1, 1), seed, dtype=node.dtype)
    node.inputs[input_index].zero_gradient()
    node.compute_input_gradient(input_index)
    return node.inputs[input_index].gradient.clone()


@pytest.fixture
def numerical_gradient():
    """Factory fixture: ``numerical_gradient(node, input_index, eps=1e-6)``."""
    return _numerical_gradient


@pytest.fixture
def analytic_gradient():
    """Factory fixture: ``analytic_gradient(node, input_index, seed=1.0)``."""
    return _analytic_gradient


@pytest.fixture
def assert_gradients_match():
    """Check every listed input's analytic gradient against central differences.

    Usage:
        def test_something(self, assert_gradients_match):
            node.validate()
            assert_gradients_match(node, [0, 1])
    """

    def _check(node, input_indices, eps=1e-6, atol=1e-6, rtol=1e-5, seed=1.0):
        for index in input_indices:
            analytic = _analytic_gradient(node, index, seed=seed)
            numerical = seed * _numerical_gradient(node, index, eps=eps)
            torch.testing.assert_close(
                analytic,
                numerical,
                atol=atol,
                rtol=rtol,
                msg=lambda m, index=index: f"input {index}: {m}",
            )

    return _check


# =============================================================================
# Minibatch layout fixtures
# =============================================================================


@pytest.fixture
def make_layout():
    """Factory for layouts of sequences that all start at timestep 0.

    Returns a function ``make_layout(lengths, num_time_steps=None)``.
    """

    def _create(lengths, num_time_steps=None):
        return MinibatchLayout.from_lengths(lengths, num_time_steps)

    return _create


@pytest.fixture
def gap_layout():
    """Two parallel sequences of lengths 3 and 2 over T=3: column 5 is a gap."""
    return MinibatchLayout.from_lengths([3, 2], num_time_steps=3)


@pytest.fixture
def make_one_hot():
    """Factory for one-hot label matrices of shape (num_classes, len(indices))."""

    def _create(indices, num_classes, dtype=torch.float64):
        indices = torch.as_tensor(indices, dtype=torch.long)
        labels = torch.zeros(num_classes, indices.numel(), dtype=dtype)
        labels[indices, torch.arange(indices.numel())] = 1.0
        return labels

    return _create
