"""Tests for the node contract: leaves, copying, devices and the factory."""

import math

import pytest
import torch

import criterion_nodes
from criterion_nodes import (
    CRITERION_NODE_TYPES,
    CRF,
    ClassBasedCrossEntropyWithSoftmax,
    CopyNodeFlags,
    CriterionRuntimeError,
    CrossEntropyWithSoftmax,
    FramePosteriorGammaCalculator,
    InputValue,
    LearnableParameter,
    LogicError,
    NCEEvalMode,
    NoiseContrastiveEstimation,
    SequenceWithSoftmax,
    SquareError,
    create_criterion_node,
)

DTYPE = torch.float64


def _cross_entropy_node(seed=0):
    torch.manual_seed(seed)
    one_hot = torch.zeros(3, 4)
    one_hot[[0, 2, 1, 1], [0, 1, 2, 3]] = 1.0
    labels = InputValue(one_hot, dtype=DTYPE)
    logits = LearnableParameter(torch.randn(3, 4), dtype=DTYPE)
    node = CrossEntropyWithSoftmax(labels, logits, dtype=DTYPE)
    node.validate()
    node.evaluate_forward()
    return node


def _stateful_inputs(node_type):
    """Inputs for the criteria that keep forward state for their backward pass."""
    torch.manual_seed(5)
    one_hot = torch.zeros(3, 4)
    one_hot[[0, 2, 1, 1], [0, 1, 2, 3]] = 1.0
    if node_type is ClassBasedCrossEntropyWithSoftmax:
        # classes {0, 1} and {2, 3, 4}
        labels = torch.tensor([[1.0, 3.0, 4.0], [0.0, 1.0, 1.0], [0.0, 2.0, 2.0], [2.0, 5.0, 5.0]])
        return [
            InputValue(labels, dtype=DTYPE),
            LearnableParameter(torch.randn(2, 3), dtype=DTYPE),
            LearnableParameter(torch.randn(2, 5), dtype=DTYPE),
            LearnableParameter(torch.randn(2, 3), dtype=DTYPE),
        ]
    if node_type is CRF:
        return [
            InputValue(one_hot, dtype=DTYPE),
            LearnableParameter(torch.randn(3, 4), dtype=DTYPE),
            LearnableParameter(torch.randn(3, 3), dtype=DTYPE),
        ]
    if node_type is NoiseContrastiveEstimation:
        log_q = math.log(0.2)
        labels = torch.tensor(
            [[0.0, 3.0, 1.0], [log_q, log_q, log_q], [2.0, 2.0, 4.0], [log_q, log_q, log_q]]
        )
        return [
            InputValue(labels, dtype=DTYPE),
            LearnableParameter(torch.randn(2, 3), dtype=DTYPE),
            LearnableParameter(torch.randn(2, 5), dtype=DTYPE),
            LearnableParameter(torch.randn(1, 5), dtype=DTYPE),
        ]
    return [
        InputValue(one_hot, dtype=DTYPE),
        LearnableParameter(torch.randn(3, 4), dtype=DTYPE),
        InputValue(torch.randn(3, 4), dtype=DTYPE),
    ]


def _input_gradients(node):
    grads = {}
    for index in node.gradient_inputs:
        input_node = node.inputs[index]
        if input_node.needs_gradient:
            input_node.zero_gradient()
            node.compute_input_gradient(index)
            grads[index] = input_node.gradient.clone()
    return grads


class TestLeaves:
    """Tests for InputValue and LearnableParameter."""

    def test_input_value_holds_layout(self, gap_layout):
        node = InputValue(torch.zeros(2, 6), gap_layout)
        assert node.layout is gap_layout
        assert not node.needs_gradient
        assert (node.num_rows, node.num_cols) == (2, 6)

    def test_parameter_needs_gradient(self):
        node = LearnableParameter(torch.zeros(2, 2))
        assert node.needs_gradient
        assert node.layout is None

    def test_set_value_casts_floats(self):
        node = InputValue(torch.zeros(2, 2), dtype=DTYPE)
        assert node.value.dtype == DTYPE
        node.set_value(torch.zeros(2, 2, dtype=torch.long))
        assert node.value.dtype == torch.long

    def test_set_value_requires_matrix(self):
        with pytest.raises(LogicError, match="2D"):
            InputValue(torch.zeros(3))

    def test_gradient_values_allocates_zeros(self):
        node = LearnableParameter(torch.ones(2, 3))
        assert node.gradient is None
        grad = node.gradient_values()
        assert grad.shape == (2, 3)
        assert grad.eq(0).all()
        assert node.gradient_values() is grad

    def test_gradient_values_follows_value_shape(self):
        node = LearnableParameter(torch.ones(2, 3))
        node.gradient_values()
        node.set_value(torch.ones(4, 1))
        assert node.gradient_values().shape == (4, 1)

    def test_repr(self):
        assert repr(InputValue(torch.zeros(2, 3), name="x")) == "InputValue(name='x', shape=(2, 3))"


class TestCriterionContract:
    """Shared behaviour of criterion nodes."""

    def test_output_is_scalar_without_layout(self, gap_layout):
        left = InputValue(torch.ones(2, 6), gap_layout)
        node = SquareError(left, LearnableParameter(torch.zeros(2, 6)))
        node.layout = gap_layout
        node.validate()
        assert node.value.shape == (1, 1)
        assert node.layout is None

    def test_wrong_arity_at_construction(self):
        with pytest.raises(LogicError, match="takes 2 inputs, got 1"):
            SquareError(LearnableParameter(torch.zeros(1, 1)))

    def test_input_accessor(self):
        node = _cross_entropy_node()
        assert node.input(1) is node.inputs[1]

    def test_backpropagate_skips_inputs_without_gradient(self):
        node = _cross_entropy_node()
        labels, logits = node.inputs
        node.backpropagate()
        assert labels.gradient is None
        assert logits.gradient is not None

    def test_backpropagate_seeds_gradient(self):
        node = _cross_entropy_node()
        node.backpropagate(seed=4.0)
        assert node.gradient.item() == 4.0

    def test_nan_check(self, monkeypatch):
        node = SquareError(
            LearnableParameter(torch.tensor([[float("inf")]])), LearnableParameter(torch.zeros(1, 1))
        )
        node.validate()
        node.evaluate_forward()
        assert node.value.item() == float("inf")

        monkeypatch.setattr(criterion_nodes.constants, "NANCHECK", True)
        with pytest.raises(CriterionRuntimeError, match="not finite"):
            node.evaluate_forward()


class TestCopy:
    """Tests for copy_to and clone."""

    def test_clone_all_reproduces_gradients(self):
        node = _cross_entropy_node()
        copy = node.clone()
        assert copy is not node
        assert copy.inputs == node.inputs
        assert copy.inputs is not node.inputs
        torch.testing.assert_close(copy.value, node.value)
        assert copy.softmax_of_right is not node.softmax_of_right

        logits = node.inputs[1]
        logits.zero_gradient()
        node.compute_input_gradient(1)
        expected = logits.gradient.clone()
        logits.zero_gradient()
        copy.compute_input_gradient(1)
        torch.testing.assert_close(logits.gradient, expected)

    @pytest.mark.parametrize(
        "node_type",
        [ClassBasedCrossEntropyWithSoftmax, CRF, NoiseContrastiveEstimation, SequenceWithSoftmax],
    )
    def test_clone_round_trip_keeps_forward_state(self, node_type):
        kwargs = {"dtype": DTYPE}
        if node_type is SequenceWithSoftmax:
            kwargs["gamma_calculator"] = FramePosteriorGammaCalculator()
        node = node_type(*_stateful_inputs(node_type), **kwargs)
        node.validate()
        node.evaluate_forward()

        copy = node.clone()
        torch.testing.assert_close(copy.value, node.value)
        for name in node.scratch_names:
            assert getattr(copy, name) is not getattr(node, name)

        expected = _input_gradients(node)
        assert expected
        actual = _input_gradients(copy)
        assert actual.keys() == expected.keys()
        for index, grad in expected.items():
            torch.testing.assert_close(actual[index], grad)

    def test_clone_name(self):
        copy = _cross_entropy_node().clone(name="ce_copy")
        assert copy.name == "ce_copy"

    def test_clone_without_value_resets_scratch(self):
        node = _cross_entropy_node()
        copy = node.clone(CopyNodeFlags.CHILDREN)
        assert copy.inputs == node.inputs
        assert copy.softmax_of_right.shape == (0, 0)
        copy.validate()
        copy.evaluate_forward()
        torch.testing.assert_close(copy.value, node.value)

    def test_clone_none_keeps_configuration_only(self):
        node = NoiseContrastiveEstimation(eval_mode=NCEEvalMode.UNNORMALIZED, name="nce")
        copy = node.clone(CopyNodeFlags.NONE)
        assert copy.inputs == []
        assert copy.eval_mode == NCEEvalMode.UNNORMALIZED
        assert copy.name == "nce"

    def test_clone_is_independent(self):
        node = NoiseContrastiveEstimation()
        copy = node.clone()
        copy.eval_mode = NCEEvalMode.SOFTMAX
        assert node.eval_mode == NCEEvalMode.NONE

    def test_crf_start_label_survives_copy(self):
        copy = CRF(start_label=2).clone(CopyNodeFlags.NONE)
        assert copy.configured_start_label == 2

    def test_gamma_calculator_is_shared(self):
        calculator = FramePosteriorGammaCalculator(acoustic_scale=0.5)
        node = SequenceWithSoftmax(gamma_calculator=calculator, hsmoothing_weight=0.8)
        copy = node.clone()
        assert copy.gamma_calculator is calculator
        assert copy.hsmoothing_weight == 0.8

    def test_copy_to_requires_same_type(self):
        with pytest.raises(LogicError, match="cannot copy"):
            CRF().copy_to(NoiseContrastiveEstimation())

    def test_copy_to_existing_node(self):
        source = _cross_entropy_node(seed=1)
        target = _cross_entropy_node(seed=2)
        source.copy_to(target)
        torch.testing.assert_close(target.value, source.value)
        assert target.inputs == source.inputs


class TestDevices:
    """Tests for move_to_device."""

    def test_same_device_is_noop(self):
        node = _cross_entropy_node()
        scratch = node.softmax_of_right
        node.move_to_device("cpu")
        assert node.softmax_of_right is scratch
        assert node.device == torch.device("cpu")

    @pytest.mark.requires_cuda
    def test_move_scratch_to_cuda(self, skip_if_no_cuda):
        node = _cross_entropy_node()
        node.move_to_device("cuda")
        assert node.value.device.type == "cuda"
        assert node.softmax_of_right.device.type == "cuda"
        scratch = node.softmax_of_right
        node.move_to_device("cuda")
        assert node.softmax_of_right is scratch


class TestFactory:
    """Tests for create_criterion_node."""

    def test_known_types(self):
        assert set(CRITERION_NODE_TYPES) == {
            "SquareError",
            "MatrixL1Reg",
            "MatrixL2Reg",
            "CrossEntropyWithSoftmax",
            "CrossEntropy",
            "NCEBasedCrossEntropyWithSoftmax",
            "ClassBasedCrossEntropyWithSoftmax",
            "CRF",
            "DummyCriterion",
            "SequenceWithSoftmax",
        }

    def test_creates_node_with_inputs(self):
        labels = InputValue(torch.eye(2))
        logits = LearnableParameter(torch.zeros(2, 2))
        node = create_criterion_node("CrossEntropyWithSoftmax", labels, logits, name="ce")
        assert isinstance(node, CrossEntropyWithSoftmax)
        assert node.inputs == [labels, logits]
        assert node.name == "ce"

    def test_passes_options(self):
        node = create_criterion_node("CRF", start_label=1)
        assert node.configured_start_label == 1

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError, match="Unknown criterion node type: Softmax"):
            create_criterion_node("Softmax")
