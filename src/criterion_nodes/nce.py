r"""Noise-contrastive estimation criterion with exact evaluation modes.

The node is dual-purpose. During training, labels carry one target word and
``k`` sampled noise words per column, each with its log noise probability,
and the loss is the NCE objective:

.. math::
    \mathcal{L} = -\sum_t \Big[ \log \sigma_t(w_0) + \sum_{i \ge 1} \log (1 - \sigma_t(w_i)) \Big],
    \qquad \sigma_t(w) = \frac{e^{s_t(w)}}{e^{s_t(w)} + k\, q(w)}

with :math:`s_t(w) = b_w + h_t \cdot W_{:, w}`. At evaluation time a single
label row selects an exact mode from its sign: positive word indices score
with a full softmax over the vocabulary, negated indices with the
unnormalized score :math:`s_t(w)`.

Label layout in training mode, :math:`2(k + 1) \times T`::

    row 2i     word index of sample i (sample 0 is the target)
    row 2i+1   log q of that word under the noise distribution
"""

import enum
import io
import logging
import math
import struct
from typing import BinaryIO

import torch
from torch import Tensor

from .exceptions import CriterionRuntimeError, LogicError
from .node import CriterionNode, mask_missing_columns
from .validation import validate_device_consistency, validate_input_role

logger = logging.getLogger(__name__)

__all__ = ["NCEEvalMode", "NoiseContrastiveEstimation"]

_MODE_TAG = struct.Struct("<i")


class NCEEvalMode(enum.IntEnum):
    r"""Persisted evaluation mode of :class:`NoiseContrastiveEstimation`.

    ``NONE`` means training: the mode is then chosen from the labels.
    """

    SOFTMAX = 0
    UNNORMALIZED = 1
    NONE = 2


class NoiseContrastiveEstimation(CriterionNode):
    r"""NCE-based approximation of softmax cross entropy.

    Args:
        labels (InputValue): Label matrix, one row in evaluation or
            :math:`2(k + 1)` rows in training.
        hidden (ComputationNode): Hidden activations of shape :math:`(H, N)`.
        weights (LearnableParameter): Output embedding of shape :math:`(H, V)`.
        bias (LearnableParameter): Output bias of shape :math:`(1, V)`.
        eval_mode (NCEEvalMode, optional): Fixed evaluation mode. Default: ``NCEEvalMode.NONE``

    Attributes:
        log_softmax (Tensor): Vocabulary log-softmax per column, shape :math:`(V, N)`,
            filled in softmax mode.
        nce_prediction (Tensor): :math:`\partial \mathcal{L} / \partial s` per sample
            and column, shape :math:`(k + 1, N)`, filled in training mode.
    """

    operation_name = "NCEBasedCrossEntropyWithSoftmax"
    num_inputs = 4
    gradient_inputs = (1, 2, 3)
    scratch_names = ("log_softmax", "nce_prediction")

    def __init__(self, *inputs, eval_mode: NCEEvalMode = NCEEvalMode.NONE, **kwargs):
        self._eval_mode = NCEEvalMode(eval_mode)
        self._forward_mode = None
        super().__init__(*inputs, **kwargs)

    @property
    def eval_mode(self) -> NCEEvalMode:
        return self._eval_mode

    @eval_mode.setter
    def eval_mode(self, mode: NCEEvalMode) -> None:
        self._eval_mode = NCEEvalMode(mode)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, stream: BinaryIO) -> None:
        r"""Write the evaluation mode as a little-endian int32 tag."""
        stream.write(_MODE_TAG.pack(int(self._eval_mode)))

    def load(self, stream: BinaryIO) -> None:
        r"""Read the evaluation mode written by :meth:`save`.

        A tag above ``NCEEvalMode.NONE`` was not written by this node: the
        stream is rewound to where the tag started and the mode falls back to
        ``NONE``, so the caller can read those bytes as whatever follows.

        Raises:
            CriterionRuntimeError: If the tag is negative or the stream ends early.
        """
        data = stream.read(_MODE_TAG.size)
        if len(data) != _MODE_TAG.size:
            raise CriterionRuntimeError(
                f"{self.name}: truncated evaluation mode tag ({len(data)} of {_MODE_TAG.size} bytes)"
            )
        (tag,) = _MODE_TAG.unpack(data)
        if tag < 0:
            raise CriterionRuntimeError(f"{self.name}: invalid evaluation mode tag {tag}")
        if tag > NCEEvalMode.NONE:
            logger.warning(
                "%s: unknown evaluation mode tag %d, rewinding and defaulting to NONE",
                self.name,
                tag,
            )
            stream.seek(-_MODE_TAG.size, io.SEEK_CUR)
            self._eval_mode = NCEEvalMode.NONE
            return
        self._eval_mode = NCEEvalMode(tag)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        labels, hidden, weights, bias = self.inputs
        validate_input_role(self.operation_name, labels, 0)
        if is_final_pass:
            if hidden.num_rows != weights.num_rows:
                raise LogicError(
                    f"The matrix dimensions for observation and weight in the "
                    f"{self.operation_name} operation do not match: "
                    f"{hidden.num_rows} vs {weights.num_rows} rows"
                )
            if labels.num_cols != hidden.num_cols:
                raise LogicError(
                    f"The matrix dimensions for label and observation in the "
                    f"{self.operation_name} operation do not match: "
                    f"{labels.num_cols} vs {hidden.num_cols} columns"
                )
            if tuple(bias.value.shape) != (1, weights.num_cols):
                raise LogicError(
                    f"{self.operation_name}: bias must be 1 x {weights.num_cols}, "
                    f"got {tuple(bias.value.shape)}"
                )
        self._resize_scratch("log_softmax", weights.num_cols, hidden.num_cols)
        self._resize_scratch("nce_prediction", max(labels.num_rows // 2, 1), labels.num_cols)

    def select_mode(self) -> NCEEvalMode:
        r"""select_mode() -> NCEEvalMode

        Choose the forward mode from ``eval_mode`` and the label sign pattern.

        Raises:
            LogicError: If a single label row mixes positive and negative entries.
        """
        labels = self.inputs[0].value
        positive = negative = False
        if labels.shape[0] == 1:
            positive = bool((labels > 0).any())
            negative = bool((labels < 0).any())
            if positive and negative:
                raise LogicError(
                    f"{self.operation_name}: a single label row must not mix positive "
                    f"(softmax) and negative (unnormalized) word indices"
                )
        if self._eval_mode == NCEEvalMode.SOFTMAX or positive:
            return NCEEvalMode.SOFTMAX
        if self._eval_mode == NCEEvalMode.UNNORMALIZED or negative:
            return NCEEvalMode.UNNORMALIZED
        return NCEEvalMode.NONE

    def evaluate_forward(self) -> None:
        _, hidden, weights, bias = self.inputs
        validate_device_consistency(
            self.operation_name, {"hidden": hidden, "weights": weights, "bias": bias}
        )
        mode = self.select_mode()
        logger.debug("%s: forward in %s mode", self.name, mode.name)
        if mode == NCEEvalMode.SOFTMAX:
            loss = self._softmax_loss()
        elif mode == NCEEvalMode.UNNORMALIZED:
            loss = self._unnormalized_loss()
        else:
            loss = self._nce_loss()
        self._forward_mode = mode
        self._set_loss(loss)

    def compute_input_gradient(self, input_index: int) -> None:
        if self._eval_mode != NCEEvalMode.NONE or self._forward_mode != NCEEvalMode.NONE:
            raise LogicError(
                f"{self.operation_name}: gradients can only be computed in training mode"
            )
        if input_index not in self.gradient_inputs:
            raise self._unsupported_input(input_index)

        _, hidden, weights, bias = self.inputs
        words = self._sample_words()
        pred = self._seed() * self.nce_prediction
        if input_index == 1:
            # dL/dh_t = sum_i pred[i, t] * W[:, w_i]
            delta = torch.einsum("hkn,kn->hn", weights.value[:, words], pred)
            self._accumulate(1, delta)
        elif input_index == 2:
            contrib = hidden.value.unsqueeze(1) * pred.unsqueeze(0)
            grad = weights.gradient_values()
            grad.index_add_(1, words.reshape(-1), contrib.reshape(hidden.num_rows, -1).to(grad.dtype))
        else:
            grad = bias.gradient_values()
            grad.index_add_(1, words.reshape(-1), pred.reshape(1, -1).to(grad.dtype))

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _loss_mask(self) -> Tensor:
        labels, hidden = self.inputs[0], self.inputs[1]
        layout = labels.layout if labels.layout is not None else hidden.layout
        if layout is None:
            return torch.ones(labels.num_cols, dtype=torch.bool, device=labels.value.device)
        return layout.loss_mask(labels.value.device)

    def _eval_words(self, magnitude: bool) -> Tensor:
        row = self.inputs[0].value[0]
        if magnitude:
            row = row.abs()
        words = row.long()
        # gap columns may hold anything; point them at word 0
        return torch.where(self._loss_mask(), words, torch.zeros_like(words))

    def _softmax_loss(self) -> Tensor:
        _, hidden, weights, bias = self.inputs
        logits = weights.value.t() @ hidden.value + bias.value.t()
        self.log_softmax.copy_(torch.log_softmax(logits, dim=0))
        mask = self._loss_mask()
        words = self._eval_words(magnitude=False)
        picked = self.log_softmax.gather(0, words.unsqueeze(0)).squeeze(0)
        return -picked[mask].sum()

    def _unnormalized_loss(self) -> Tensor:
        _, hidden, weights, bias = self.inputs
        words = self._eval_words(magnitude=True)
        scores = bias.value[0, words] + (weights.value[:, words] * hidden.value).sum(dim=0)
        return -scores[self._loss_mask()].sum()

    def _sample_words(self) -> Tensor:
        labels = self.inputs[0].value
        words = labels[0::2].long()
        return torch.where(self._loss_mask().unsqueeze(0), words, torch.zeros_like(words))

    def _nce_loss(self) -> Tensor:
        labels, hidden, weights, bias = self.inputs
        rows = labels.num_rows
        if rows < 4 or rows % 2:
            raise LogicError(
                f"{self.operation_name}: training labels need 2(k+1) rows with k >= 1, got {rows}"
            )
        num_noise = rows // 2 - 1
        words = self._sample_words()
        log_q = labels.value[1::2]

        scores = bias.value[0, words] + torch.einsum(
            "hkn,hn->kn", weights.value[:, words], hidden.value
        )
        noise = math.log(num_noise) + log_q
        log_z = torch.logaddexp(scores, noise)
        is_target = torch.zeros_like(scores, dtype=torch.bool)
        is_target[0] = True

        objective = torch.where(is_target, scores - log_z, noise - log_z)
        self._resize_scratch("nce_prediction", num_noise + 1, labels.num_cols)
        self.nce_prediction.copy_(torch.exp(scores - log_z) - is_target.to(scores.dtype))
        mask_missing_columns(self.nce_prediction, labels.layout or hidden.layout)

        mask = self._loss_mask()
        return -objective[:, mask].sum()
