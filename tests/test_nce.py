"""Tests for the noise-contrastive estimation criterion."""

import io
import logging
import math
import struct

import pytest
import torch

from criterion_nodes import (
    CriterionRuntimeError,
    InputValue,
    InvalidArgumentError,
    LearnableParameter,
    LogicError,
    NCEEvalMode,
    NoiseContrastiveEstimation,
)

DTYPE = torch.float64
H, V = 3, 5


def _make_node(labels, num_cols=None, layout=None, seed=0, **kwargs):
    torch.manual_seed(seed)
    num_cols = num_cols or labels.shape[1]
    label_node = InputValue(labels, layout, dtype=DTYPE)
    hidden = LearnableParameter(torch.randn(H, num_cols), dtype=DTYPE)
    hidden.layout = layout
    weights = LearnableParameter(torch.randn(H, V), dtype=DTYPE)
    bias = LearnableParameter(torch.randn(1, V), dtype=DTYPE)
    node = NoiseContrastiveEstimation(label_node, hidden, weights, bias, dtype=DTYPE, **kwargs)
    node.validate()
    return node


def _training_labels(columns):
    """Build 2(k+1) x N labels from per-column [(word, q), ...] lists."""
    rows = 2 * len(columns[0])
    labels = torch.zeros(rows, len(columns), dtype=DTYPE)
    for t, samples in enumerate(columns):
        for i, (word, q) in enumerate(samples):
            labels[2 * i, t] = word
            labels[2 * i + 1, t] = math.log(q)
    return labels


TRAINING_COLUMNS = [
    [(1, 0.2), (0, 0.3), (4, 0.1)],
    [(3, 0.25), (2, 0.2), (2, 0.2)],
    [(0, 0.3), (1, 0.2), (3, 0.25)],
    [(4, 0.1), (3, 0.25), (0, 0.3)],
]


def _reference_nce_loss(node, columns):
    labels, hidden, weights, bias = (n.value for n in node.inputs)
    num_noise = labels.shape[0] // 2 - 1
    total = torch.zeros((), dtype=DTYPE)
    for t in columns:
        for i in range(num_noise + 1):
            word = int(labels[2 * i, t])
            s = bias[0, word] + hidden[:, t] @ weights[:, word]
            n = math.log(num_noise) + labels[2 * i + 1, t]
            z = torch.logaddexp(s, n)
            total = total + ((s - z) if i == 0 else (n - z))
    return -total.item()


class TestModeSelection:
    """Forward mode is chosen from eval_mode and the label sign pattern."""

    def test_positive_single_row_uses_softmax(self):
        node = _make_node(torch.tensor([[1.0, 2.0, 3.0, 4.0]]))
        node.evaluate_forward()
        assert node.select_mode() == NCEEvalMode.SOFTMAX

        _, hidden, weights, bias = (n.value for n in node.inputs)
        log_sm = torch.log_softmax(weights.t() @ hidden + bias.t(), dim=0)
        expected = -sum(log_sm[w, t] for t, w in enumerate([1, 2, 3, 4]))
        assert node.value.item() == pytest.approx(expected.item())
        assert node.log_softmax.shape == (V, 4)

    def test_negative_single_row_uses_unnormalized(self):
        node = _make_node(torch.tensor([[-1.0, -2.0, -3.0, -4.0]]))
        node.evaluate_forward()
        assert node.select_mode() == NCEEvalMode.UNNORMALIZED

        _, hidden, weights, bias = (n.value for n in node.inputs)
        expected = -sum(
            bias[0, w] + hidden[:, t] @ weights[:, w] for t, w in enumerate([1, 2, 3, 4])
        )
        assert node.value.item() == pytest.approx(expected.item())

    def test_mixed_signs_raise(self):
        node = _make_node(torch.tensor([[1.0, -2.0, 3.0, 4.0]]))
        with pytest.raises(LogicError, match="must not mix"):
            node.evaluate_forward()

    def test_multi_row_labels_train(self):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        assert node.select_mode() == NCEEvalMode.NONE
        node.evaluate_forward()
        assert node.value.item() == pytest.approx(_reference_nce_loss(node, range(4)))

    def test_fixed_softmax_mode_overrides_training_labels(self):
        """With eval_mode SOFTMAX the target row is scored exactly."""
        node = _make_node(_training_labels(TRAINING_COLUMNS), eval_mode=NCEEvalMode.SOFTMAX)
        node.evaluate_forward()
        _, hidden, weights, bias = (n.value for n in node.inputs)
        log_sm = torch.log_softmax(weights.t() @ hidden + bias.t(), dim=0)
        targets = [samples[0][0] for samples in TRAINING_COLUMNS]
        expected = -sum(log_sm[w, t] for t, w in enumerate(targets))
        assert node.value.item() == pytest.approx(expected.item())

    def test_fixed_unnormalized_mode(self):
        node = _make_node(torch.zeros(1, 4), eval_mode=NCEEvalMode.UNNORMALIZED)
        node.evaluate_forward()
        _, hidden, weights, bias = (n.value for n in node.inputs)
        expected = -(bias[0, 0] * 4 + (hidden.t() @ weights[:, 0]).sum())
        assert node.value.item() == pytest.approx(expected.item())

    def test_eval_mode_setter(self):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        node.eval_mode = 0
        assert node.eval_mode is NCEEvalMode.SOFTMAX

    def test_training_needs_noise_samples(self):
        node = _make_node(torch.tensor([[1.0, 2.0], [-1.0, -1.0]]))
        with pytest.raises(LogicError, match="k >= 1"):
            node.evaluate_forward()


class TestTraining:
    """NCE training loss and gradients."""

    def test_nce_prediction(self):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        node.evaluate_forward()
        assert node.nce_prediction.shape == (3, 4)
        # target entries are sigma - 1 < 0, noise entries are sigma > 0
        assert (node.nce_prediction[0] < 0).all()
        assert (node.nce_prediction[1:] > 0).all()

    def test_finite_differences(self, assert_gradients_match):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        assert_gradients_match(node, [1, 2, 3])

    def test_gap_columns_contribute_nothing(self, make_layout, assert_gradients_match):
        layout = make_layout([2, 1], 2)
        columns = [list(c) for c in TRAINING_COLUMNS]
        labels = _training_labels(columns)
        # gap column 3 holds out-of-vocabulary garbage
        labels[0::2, 3] = 99.0
        node = _make_node(labels, layout=layout)
        node.evaluate_forward()
        assert node.value.item() == pytest.approx(_reference_nce_loss(node, range(3)))
        assert node.nce_prediction[:, 3].eq(0).all()
        assert_gradients_match(node, [1, 2, 3])

    def test_gradient_scaled_by_seed(self, analytic_gradient):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        once = analytic_gradient(node, 3, seed=1.0)
        twice = analytic_gradient(node, 3, seed=2.0)
        torch.testing.assert_close(twice, 2.0 * once)

    def test_label_gradient_raises(self):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        node.evaluate_forward()
        with pytest.raises(InvalidArgumentError):
            node.compute_input_gradient(0)

    def test_gradient_after_evaluation_forward_raises(self):
        node = _make_node(torch.tensor([[1.0, 2.0, 3.0, 4.0]]))
        node.evaluate_forward()
        with pytest.raises(LogicError, match="training mode"):
            node.compute_input_gradient(1)

    def test_gradient_in_evaluation_mode_raises(self):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        node.evaluate_forward()
        node.eval_mode = NCEEvalMode.UNNORMALIZED
        with pytest.raises(LogicError, match="training mode"):
            node.compute_input_gradient(2)


class TestValidate:
    """Shape and role checks."""

    def test_label_must_be_input_value(self):
        params = [LearnableParameter(torch.zeros(2, 4)) for _ in range(4)]
        node = NoiseContrastiveEstimation(*params)
        with pytest.raises(LogicError, match="requires input 0 to be the label"):
            node.validate()

    def test_hidden_weight_rows_mismatch(self):
        node = NoiseContrastiveEstimation(
            InputValue(torch.ones(1, 4)),
            LearnableParameter(torch.zeros(3, 4)),
            LearnableParameter(torch.zeros(2, 5)),
            LearnableParameter(torch.zeros(1, 5)),
        )
        with pytest.raises(LogicError, match="observation and weight"):
            node.validate()

    def test_label_hidden_cols_mismatch(self):
        node = NoiseContrastiveEstimation(
            InputValue(torch.ones(1, 3)),
            LearnableParameter(torch.zeros(3, 4)),
            LearnableParameter(torch.zeros(3, 5)),
            LearnableParameter(torch.zeros(1, 5)),
        )
        with pytest.raises(LogicError, match="label and observation"):
            node.validate()

    def test_bias_shape(self):
        node = NoiseContrastiveEstimation(
            InputValue(torch.ones(1, 4)),
            LearnableParameter(torch.zeros(3, 4)),
            LearnableParameter(torch.zeros(3, 5)),
            LearnableParameter(torch.zeros(5, 1)),
        )
        with pytest.raises(LogicError, match="bias must be 1 x 5"):
            node.validate()

    def test_weights_on_another_device_raise(self):
        node = _make_node(_training_labels(TRAINING_COLUMNS))
        weights = node.inputs[2]
        weights.value = weights.value.to("meta")
        with pytest.raises(LogicError, match="weights on meta"):
            node.evaluate_forward()


class TestPersistence:
    """Evaluation mode tag round trips and forward compatibility."""

    @pytest.mark.parametrize("mode", list(NCEEvalMode))
    def test_round_trip(self, mode):
        source = NoiseContrastiveEstimation(eval_mode=mode)
        stream = io.BytesIO()
        source.save(stream)
        assert stream.getvalue() == struct.pack("<i", int(mode))

        stream.seek(0)
        target = NoiseContrastiveEstimation()
        target.eval_mode = NCEEvalMode.SOFTMAX if mode != NCEEvalMode.SOFTMAX else NCEEvalMode.NONE
        target.load(stream)
        assert target.eval_mode == mode
        assert stream.tell() == 4

    def test_unknown_tag_rewinds(self, caplog):
        stream = io.BytesIO(struct.pack("<i", 7) + b"rest")
        node = NoiseContrastiveEstimation(eval_mode=NCEEvalMode.SOFTMAX)
        with caplog.at_level(logging.WARNING, logger="criterion_nodes.nce"):
            node.load(stream)
        assert node.eval_mode == NCEEvalMode.NONE
        assert stream.tell() == 0
        assert "unknown evaluation mode tag 7" in caplog.text

    def test_negative_tag_raises(self):
        stream = io.BytesIO(struct.pack("<i", -1))
        with pytest.raises(CriterionRuntimeError, match="invalid evaluation mode tag"):
            NoiseContrastiveEstimation().load(stream)

    def test_truncated_stream_raises(self):
        with pytest.raises(CriterionRuntimeError, match="truncated"):
            NoiseContrastiveEstimation().load(io.BytesIO(b"\x01\x00"))
