r"""Linear-chain CRF criterion solved by log-domain forward-backward.

Labels are one-hot columns over ``C`` states. ``transitions[k, j]`` scores a
move from state ``j`` to state ``k`` and the chain starts from a designated
start state, so the first frame also pays ``transitions[y_0, start]``.

The backward pass is a smoother: rather than the usual backward messages it
directly yields log marginal posteriors,

.. math::
    \beta_{k,T-1} = \alpha_{k,T-1} - \log Z, \qquad
    \beta_{k,t} = \log \sum_j \exp\Big(\beta_{j,t+1} + \alpha_{k,t} + A_{jk}
        - \log \sum_m \exp(\alpha_{m,t} + A_{jm})\Big)

so that :math:`P(y_t = k) = \exp(\beta_{k,t})`.

Note:
    Only one parallel sequence per minibatch is supported. The recursions run
    over the label-carrying columns of that sequence.
"""

import logging
from typing import Optional

import torch
from torch import Tensor

from .constants import NEG_INF
from .exceptions import LogicError
from .node import CriterionNode
from .validation import (
    validate_device_consistency,
    validate_float_dtype,
    validate_one_hot_labels,
)

logger = logging.getLogger(__name__)

__all__ = [
    "crf_forward_alpha",
    "crf_backward_beta",
    "crf_transition_gradient",
    "crf_gold_score",
    "CRF",
]


def _start_vector(num_labels: int, start_label: int, like: Tensor) -> Tensor:
    prev = torch.full((num_labels,), NEG_INF, dtype=like.dtype, device=like.device)
    prev[start_label] = 0.0
    return prev


def crf_forward_alpha(emissions: Tensor, transitions: Tensor, start_label: int) -> Tensor:
    r"""crf_forward_alpha(emissions, transitions, start_label) -> Tensor

    Forward recursion of the linear-chain CRF in log space.

    .. math::
        \alpha_{k,t} = \log \sum_j \exp(\alpha_{j,t-1} + A_{kj}) + e_{k,t}

    with :math:`\alpha_{j,-1} = 0` for the start state and ``NEG_INF`` otherwise.

    Args:
        emissions (Tensor): Emission scores of shape :math:`(C, T)`.
        transitions (Tensor): Transition scores of shape :math:`(C, C)`.
        start_label (int): Start state.

    Returns:
        Tensor: Alpha of shape :math:`(C, T)`.
    """
    num_labels, num_frames = emissions.shape
    alpha = torch.empty_like(emissions)
    prev = _start_vector(num_labels, start_label, emissions)
    for t in range(num_frames):
        alpha[:, t] = torch.logsumexp(prev.unsqueeze(0) + transitions, dim=1) + emissions[:, t]
        prev = alpha[:, t]
    return alpha


def crf_backward_beta(alpha: Tensor, transitions: Tensor) -> tuple[Tensor, Tensor]:
    r"""crf_backward_beta(alpha, transitions) -> (Tensor, Tensor)

    Backward smoother producing log marginal posteriors.

    Args:
        alpha (Tensor): Output of :func:`crf_forward_alpha`, shape :math:`(C, T)`.
        transitions (Tensor): Transition scores of shape :math:`(C, C)`.

    Returns:
        beta: Log posteriors of shape :math:`(C, T)`; each column logsumexps to 0.
        log_partition: 0-dim tensor :math:`\log Z`.
    """
    num_frames = alpha.shape[1]
    beta = torch.empty_like(alpha)
    log_partition = torch.logsumexp(alpha[:, -1], dim=0)
    beta[:, -1] = alpha[:, -1] - log_partition
    for t in range(num_frames - 2, -1, -1):
        # norm[j] = log sum_m exp(alpha[m, t] + A[j, m])
        norm = torch.logsumexp(alpha[:, t].unsqueeze(0) + transitions, dim=1)
        # rows index the next state j, columns the current state k
        term = beta[:, t + 1].unsqueeze(1) + alpha[:, t].unsqueeze(0) + transitions - norm.unsqueeze(1)
        beta[:, t] = torch.logsumexp(term, dim=0)
    return beta, log_partition


def crf_transition_gradient(
    gold: Tensor, alpha: Tensor, beta: Tensor, transitions: Tensor, start_label: int
) -> Tensor:
    r"""crf_transition_gradient(gold, alpha, beta, transitions, start_label) -> Tensor

    Gradient of the CRF loss with respect to the transition scores.

    Expected edge counts minus gold edge counts, where the expected count of
    the edge :math:`i \to j` at frame ``t`` is

    .. math::
        \exp\Big(\text{prev}_{t,i} + A_{ji} - \log \sum_k \exp(\text{prev}_{t,k} + A_{jk})
            + \beta_{j,t}\Big)

    with :math:`\text{prev}_0` the start vector and :math:`\text{prev}_t = \alpha_{:,t-1}`.

    Args:
        gold (Tensor): Gold state per frame, ``long`` of shape :math:`(T,)`.
        alpha (Tensor): Forward scores of shape :math:`(C, T)`.
        beta (Tensor): Log posteriors of shape :math:`(C, T)`.
        transitions (Tensor): Transition scores of shape :math:`(C, C)`.
        start_label (int): Start state.

    Returns:
        Tensor: Gradient of shape :math:`(C, C)`, unscaled.
    """
    num_labels, num_frames = alpha.shape
    grad = torch.zeros_like(transitions)
    gold = gold.tolist()
    prev = _start_vector(num_labels, start_label, alpha)
    prev_label = start_label
    for t in range(num_frames):
        if t > 0:
            prev = alpha[:, t - 1]
            prev_label = gold[t - 1]
        scores = prev.unsqueeze(0) + transitions
        norm = torch.logsumexp(scores, dim=1, keepdim=True)
        grad += torch.exp(scores - norm + beta[:, t].unsqueeze(1))
        grad[gold[t], prev_label] -= 1.0
    return grad


def crf_gold_score(
    gold: Tensor, emissions: Tensor, transitions: Tensor, start_label: int
) -> Tensor:
    r"""crf_gold_score(gold, emissions, transitions, start_label) -> Tensor

    Score of the gold path, including the transition out of the start state.

    Args:
        gold (Tensor): Gold state per frame, ``long`` of shape :math:`(T,)`.
        emissions (Tensor): Emission scores of shape :math:`(C, T)`.
        transitions (Tensor): Transition scores of shape :math:`(C, C)`.
        start_label (int): Start state.

    Returns:
        Tensor: 0-dim path score.
    """
    frames = torch.arange(gold.shape[0], device=emissions.device)
    score = emissions[gold, frames].sum() + transitions[gold[0], start_label]
    if gold.shape[0] > 1:
        score = score + transitions[gold[1:], gold[:-1]].sum()
    return score


class CRF(CriterionNode):
    r"""Negative log-likelihood of a linear-chain CRF.

    .. math::
        \mathcal{L} = -\big(\text{score}(y) - \log Z\big)

    Args:
        labels (InputValue): One-hot gold labels of shape :math:`(C, N)`.
        emissions (ComputationNode): Position-dependent scores of shape :math:`(C, N)`.
        transitions (LearnableParameter): Pairwise scores of shape :math:`(C, C)`.
        start_label (int, optional): Start state. Default: the gold state of the first frame

    Attributes:
        alpha (Tensor): Forward scores, shape :math:`(C, N)`, zero on unused columns.
        beta (Tensor): Log marginal posteriors, shape :math:`(C, N)`, zero on unused columns.
        post_prob (Tensor): :math:`\exp(\beta)` on used columns, zero elsewhere.
        start_label (int): Start state used by the last forward pass.
        end_label (int): Gold state of the last used frame.
    """

    operation_name = "CRF"
    num_inputs = 3
    gradient_inputs = (1, 2)
    scratch_names = ("alpha", "beta", "post_prob")

    def __init__(self, *inputs, start_label: Optional[int] = None, **kwargs):
        self.configured_start_label = start_label
        self.start_label = None
        self.end_label = None
        self._gold = None
        self._columns = None
        super().__init__(*inputs, **kwargs)

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        labels, emissions, transitions = self.inputs
        if is_final_pass:
            if not (
                emissions.num_rows == transitions.num_rows
                and labels.num_rows == emissions.num_rows
                and labels.num_cols == emissions.num_cols
                and transitions.num_rows == transitions.num_cols
            ):
                raise LogicError(
                    f"The matrix dimensions in the {self.operation_name} operation do not match: "
                    f"labels {tuple(labels.value.shape)}, emissions {tuple(emissions.value.shape)}, "
                    f"transitions {tuple(transitions.value.shape)}"
                )
            validate_float_dtype(emissions.value, "emissions")
        for name in self.scratch_names:
            self._resize_scratch(name, *emissions.value.shape)

    def _used_columns(self) -> Tensor:
        labels = self.inputs[0]
        layout = labels.layout
        if layout is None:
            return torch.arange(labels.num_cols)
        if layout.num_parallel_sequences != 1:
            raise LogicError(
                f"{self.operation_name}: more than one parallel sequence per minibatch "
                f"is not supported (got {layout.num_parallel_sequences})"
            )
        return torch.nonzero(layout.loss_mask()).flatten()

    def evaluate_forward(self) -> None:
        labels, emissions, transitions = self.inputs
        validate_device_consistency(
            self.operation_name, {"emissions": emissions, "transitions": transitions}
        )
        columns = self._used_columns()
        if columns.numel() == 0:
            raise LogicError(f"{self.operation_name}: the minibatch has no labeled frames")

        device = emissions.value.device
        columns = columns.to(device)
        gold = validate_one_hot_labels(labels.value.to(device)[:, columns]).to(device)
        start = self.configured_start_label
        if start is None:
            start = int(gold[0])

        frame_emissions = emissions.value[:, columns]
        alpha = crf_forward_alpha(frame_emissions, transitions.value, start)
        beta, log_partition = crf_backward_beta(alpha, transitions.value)
        score = crf_gold_score(gold, frame_emissions, transitions.value, start)

        for name in self.scratch_names:
            getattr(self, name).zero_()
        self.alpha[:, columns] = alpha.to(self.dtype)
        self.beta[:, columns] = beta.to(self.dtype)
        self.post_prob[:, columns] = torch.exp(beta).to(self.dtype)

        self.start_label = start
        self.end_label = int(gold[-1])
        self._gold = gold
        self._columns = columns
        logger.debug(
            "%s: %d frames, start label %d, log Z %.6f",
            self.name,
            columns.numel(),
            start,
            float(log_partition),
        )
        self._set_loss(-(score - log_partition))

    def compute_input_gradient(self, input_index: int) -> None:
        if input_index not in self.gradient_inputs:
            raise self._unsupported_input(input_index)
        g = self._seed()
        labels, emissions, transitions = self.inputs
        columns = self._columns
        if input_index == 1:
            delta = torch.zeros_like(self.post_prob)
            delta[:, columns] = g * (self.post_prob[:, columns] - labels.value.to(delta.device)[:, columns])
            self._accumulate(1, delta)
        else:
            grad = crf_transition_gradient(
                self._gold,
                self.alpha[:, columns],
                self.beta[:, columns],
                transitions.value.to(self.dtype),
                self.start_label,
            )
            self._accumulate(2, g * grad)
