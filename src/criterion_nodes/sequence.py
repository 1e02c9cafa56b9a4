r"""Criteria whose objective comes from outside the graph.

:class:`DummyCriterion` passes through an objective and a derivative computed
elsewhere, e.g. by an external lattice toolkit. :class:`SequenceWithSoftmax`
delegates the objective and per-frame state posteriors ("gamma") to a
:class:`GammaCalculator` and turns them into a smoothed gradient for the
logits.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import torch
from torch import Tensor

from .exceptions import InvalidArgumentError, LogicError
from .layout import MinibatchLayout
from .node import CriterionNode, mask_missing_columns
from .validation import validate_input_role

logger = logging.getLogger(__name__)

__all__ = [
    "DummyCriterion",
    "GammaCalculator",
    "FramePosteriorGammaCalculator",
    "SequenceWithSoftmax",
]


class DummyCriterion(CriterionNode):
    r"""Criterion fed with a precomputed objective and derivative.

    Args:
        objective (InputValue): 1x1 objective.
        derivative (InputValue): Gradient of the objective with respect to the prediction.
        prediction (ComputationNode): Network output receiving ``derivative``.
    """

    operation_name = "DummyCriterion"
    num_inputs = 3
    gradient_inputs = (2,)

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        objective, derivative, prediction = self.inputs
        validate_input_role(self.operation_name, objective, 0, role="the computed objective")
        validate_input_role(self.operation_name, derivative, 1, role="the computed derivative")
        if is_final_pass:
            if objective.num_rows != 1:
                raise LogicError(
                    f"{self.operation_name} requires the objective to have one row, "
                    f"got {objective.num_rows}"
                )
            if any(node.value.numel() == 0 for node in self.inputs):
                raise LogicError(f"{self.operation_name}: one of the operands has 0 elements")
            if derivative.value.shape != prediction.value.shape:
                raise LogicError(
                    f"The matrix dimensions in the {self.operation_name} operation do not match: "
                    f"derivative {tuple(derivative.value.shape)}, "
                    f"prediction {tuple(prediction.value.shape)}"
                )

    def evaluate_forward(self) -> None:
        objective = self.inputs[0].value
        if tuple(objective.shape) != (1, 1):
            raise LogicError(
                f"{self.operation_name} expects the objective to be 1 x 1, got {tuple(objective.shape)}"
            )
        self._set_loss(objective)

    def compute_input_gradient(self, input_index: int) -> None:
        if not 0 <= input_index <= 2:
            raise InvalidArgumentError(f"{self.operation_name} only takes three inputs")
        if input_index == 0:
            raise LogicError(
                f"{self.operation_name}: derivatives with respect to the objective are not implemented"
            )
        if input_index == 1:
            raise LogicError(
                f"{self.operation_name}: derivatives with respect to the derivative are not implemented"
            )
        derivative, prediction = self.inputs[1], self.inputs[2]
        delta = self._seed() * derivative.value
        self._accumulate(2, mask_missing_columns(delta, prediction.layout))


class GammaCalculator(ABC):
    r"""Source of sequence-level objectives and per-frame state posteriors."""

    @abstractmethod
    def calculate(
        self, log_likelihoods: Tensor, labels: Tensor, layout: Optional[MinibatchLayout]
    ) -> tuple[Tensor, Tensor]:
        r"""calculate(log_likelihoods, labels, layout) -> (Tensor, Tensor)

        Args:
            log_likelihoods (Tensor): State log-likelihoods of shape :math:`(C, N)`.
            labels (Tensor): Reference alignment, one-hot of shape :math:`(C, N)`.
            layout (MinibatchLayout, optional): Layout of the minibatch.

        Returns:
            objective: Sequence objective to minimize, a single element.
            gamma: State posteriors of shape :math:`(C, N)`.
        """
        raise NotImplementedError


class FramePosteriorGammaCalculator(GammaCalculator):
    r"""Gamma calculator over an unconstrained lattice.

    Every state is reachable at every frame, so the posteriors factor per
    frame into a softmax of the scaled log-likelihoods and the objective is
    the frame-level negative log posterior of the reference:

    .. math::
        \mathcal{L} = -\sum_t \Big( \langle y_t, \kappa\, \ell_t \rangle
            - \log \sum_c \exp(\kappa\, \ell_{c,t}) \Big)

    Args:
        acoustic_scale (float, optional): Scale :math:`\kappa` applied to the
            log-likelihoods. Default: ``1.0``
    """

    def __init__(self, acoustic_scale: float = 1.0):
        if acoustic_scale <= 0:
            raise ValueError(f"acoustic_scale must be positive, got {acoustic_scale}")
        self.acoustic_scale = acoustic_scale

    def calculate(self, log_likelihoods, labels, layout=None):
        scaled = self.acoustic_scale * log_likelihoods
        gamma = torch.softmax(scaled, dim=0)
        frame_objective = (labels * scaled).sum(dim=0) - torch.logsumexp(scaled, dim=0)
        if layout is not None:
            mask = layout.loss_mask(scaled.device)
            frame_objective = frame_objective[mask]
            gamma = mask_missing_columns(gamma, layout)
        return -frame_objective.sum(), gamma

    def __repr__(self) -> str:
        return f"FramePosteriorGammaCalculator(acoustic_scale={self.acoustic_scale})"


class SequenceWithSoftmax(CriterionNode):
    r"""Discriminative sequence training criterion over softmax outputs.

    The logits gradient interpolates frame-level cross entropy and the
    sequence posteriors:

    .. math::
        \frac{\partial \mathcal{L}}{\partial z} =
            g \big( (1 - h)\, \operatorname{softmax}(z) + h\, \gamma - y \big)

    where :math:`h` is ``hsmoothing_weight``. Frames whose reference state
    has :math:`\gamma` below ``frame_drop_threshold`` get no gradient.

    Args:
        labels (InputValue): One-hot reference states of shape :math:`(C, N)`.
        logits (ComputationNode): Network output of shape :math:`(C, N)`.
        log_likelihoods (ComputationNode): State log-likelihoods of shape :math:`(C, N)`.
        gamma_calculator (GammaCalculator, optional): Objective and posterior source.
            Default: ``None``, attach one with :meth:`set_gamma_calculator`.
        hsmoothing_weight (float, optional): Weight of the sequence posteriors. Default: ``0.95``
        frame_drop_threshold (float, optional): Posterior below which a frame is dropped.
            Default: ``1e-10``
    """

    operation_name = "SequenceWithSoftmax"
    num_inputs = 3
    gradient_inputs = (0, 1, 2)
    scratch_names = (
        "log_softmax_of_right",
        "softmax_of_right",
        "gamma_from_lattice",
        "mask_of_frame_drop",
    )
    _shared_attributes = CriterionNode._shared_attributes + ("gamma_calculator",)

    def __init__(
        self,
        *inputs,
        gamma_calculator: Optional[GammaCalculator] = None,
        hsmoothing_weight: float = 0.95,
        frame_drop_threshold: float = 1e-10,
        **kwargs,
    ):
        self.gamma_calculator = gamma_calculator
        self.hsmoothing_weight = hsmoothing_weight
        self.frame_drop_threshold = frame_drop_threshold
        super().__init__(*inputs, **kwargs)

    def set_gamma_calculator(self, calculator: GammaCalculator) -> None:
        self.gamma_calculator = calculator

    def set_hsmoothing_weight(self, weight: float) -> None:
        self.hsmoothing_weight = weight

    def set_frame_drop_threshold(self, threshold: float) -> None:
        self.frame_drop_threshold = threshold

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        labels, logits, log_likelihoods = self.inputs
        validate_input_role(self.operation_name, labels, 0)
        if is_final_pass:
            shapes = {tuple(node.value.shape) for node in self.inputs}
            if len(shapes) != 1:
                raise LogicError(
                    f"The matrix dimensions in the {self.operation_name} operation do not match: "
                    f"{[tuple(node.value.shape) for node in self.inputs]}"
                )
        for name in self.scratch_names:
            self._resize_scratch(name, *labels.value.shape)

    def _layout(self) -> Optional[MinibatchLayout]:
        labels, logits = self.inputs[0], self.inputs[1]
        return labels.layout if labels.layout is not None else logits.layout

    def evaluate_forward(self) -> None:
        if self.gamma_calculator is None:
            raise LogicError(
                f"{self.operation_name} evaluation requires a gamma calculator to be set"
            )
        labels, logits, log_likelihoods = self.inputs
        layout = self._layout()

        self.log_softmax_of_right.copy_(torch.log_softmax(logits.value, dim=0))
        mask_missing_columns(self.log_softmax_of_right, layout)
        torch.exp(self.log_softmax_of_right, out=self.softmax_of_right)
        mask_missing_columns(self.softmax_of_right, layout)

        objective, gamma = self.gamma_calculator.calculate(log_likelihoods.value, labels.value, layout)
        self.gamma_from_lattice.copy_(gamma)
        mask_missing_columns(self.gamma_from_lattice, layout)
        self._set_loss(objective)

    def compute_input_gradient(self, input_index: int) -> None:
        g = self._seed()
        if input_index == 0:
            self._accumulate(0, -g * self.log_softmax_of_right)
        elif input_index == 1:
            labels = self.inputs[0].value
            h = self.hsmoothing_weight
            delta = g * ((1.0 - h) * self.softmax_of_right + h * self.gamma_from_lattice - labels)
            self._drop_frames(delta)
            self._accumulate(1, mask_missing_columns(delta, self._layout()))
        elif input_index == 2:
            # no gradient flows into the log-likelihoods
            return
        else:
            raise self._unsupported_input(input_index)

    def _drop_frames(self, delta: Tensor) -> None:
        labels = self.inputs[0].value.to(delta.device)
        weak = (labels == 1) & (self.gamma_from_lattice < self.frame_drop_threshold)
        dropped = weak.any(dim=0)
        self.mask_of_frame_drop.fill_(1.0)
        self.mask_of_frame_drop[:, dropped] = 0.0
        delta[:, dropped] = 0.0
        if bool(dropped.any()):
            logger.debug("%s: dropped %d frames", self.name, int(dropped.sum()))
