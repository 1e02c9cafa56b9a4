r"""Cross-entropy criteria over column-wise class distributions.

Both criteria treat each minibatch column as one sample whose rows are
classes. :class:`CrossEntropyWithSoftmax` normalizes raw logits itself with a
stable log-softmax; :class:`CrossEntropy` expects probabilities that are
already normalized.
"""

import torch

from .node import CriterionNode, mask_missing_columns
from .validation import validate_input_role, validate_same_shape

__all__ = ["CrossEntropyWithSoftmax", "CrossEntropy"]


def _prediction_layout(node: CriterionNode):
    labels, prediction = node.inputs[0], node.inputs[1]
    return prediction.layout if prediction.layout is not None else labels.layout


class CrossEntropyWithSoftmax(CriterionNode):
    r"""Softmax followed by cross entropy against (soft or one-hot) labels.

    .. math::
        \mathcal{L} = -\sum_{t} \langle y_t, \log \operatorname{softmax}(z_t) \rangle

    Args:
        labels (ComputationNode): Target distributions of shape :math:`(C, N)`.
        logits (ComputationNode): Unnormalized scores of shape :math:`(C, N)`.

    Attributes:
        log_softmax_of_right (Tensor): Column log-softmax of the logits, zero on gap columns.
        softmax_of_right (Tensor): Column softmax of the logits, zero on gap columns.
    """

    operation_name = "CrossEntropyWithSoftmax"
    num_inputs = 2
    gradient_inputs = (0, 1)
    scratch_names = ("log_softmax_of_right", "softmax_of_right")

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        labels, logits = self.inputs
        if is_final_pass:
            validate_same_shape(
                self.operation_name, labels.value, logits.value, names=("labels", "logits")
            )
        self._resize_scratch("log_softmax_of_right", *logits.value.shape)
        self._resize_scratch("softmax_of_right", *logits.value.shape)

    def evaluate_forward(self) -> None:
        labels, logits = self.inputs
        layout = _prediction_layout(self)
        self.log_softmax_of_right.copy_(torch.log_softmax(logits.value, dim=0))
        mask_missing_columns(self.log_softmax_of_right, layout)
        torch.exp(self.log_softmax_of_right, out=self.softmax_of_right)
        mask_missing_columns(self.softmax_of_right, layout)
        self._set_loss(-(labels.value * self.log_softmax_of_right).sum())

    def compute_input_gradient(self, input_index: int) -> None:
        g = self._seed()
        if input_index == 0:
            self._accumulate(0, -g * self.log_softmax_of_right)
        elif input_index == 1:
            labels = self.inputs[0]
            delta = g * (self.softmax_of_right - labels.value)
            self._accumulate(1, mask_missing_columns(delta, _prediction_layout(self)))
        else:
            raise self._unsupported_input(input_index)


class CrossEntropy(CriterionNode):
    r"""Cross entropy against already-normalized probabilities.

    .. math::
        \mathcal{L} = -\sum_{t} \langle y_t, \log p_t \rangle

    Input 0 must be a label leaf (:class:`~criterion_nodes.node.InputValue`).
    Entries whose label is zero contribute nothing, even where ``p`` is zero.

    Args:
        labels (InputValue): Target distributions of shape :math:`(C, N)`.
        probs (ComputationNode): Predicted probabilities of shape :math:`(C, N)`.
    """

    operation_name = "CrossEntropy"
    num_inputs = 2
    gradient_inputs = (0, 1)
    scratch_names = ("log_of_right", "left_div_right")

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        labels, probs = self.inputs
        validate_input_role(self.operation_name, labels, 0)
        if is_final_pass:
            validate_same_shape(
                self.operation_name, labels.value, probs.value, names=("labels", "probs")
            )
        self._resize_scratch("log_of_right", *probs.value.shape)
        self._resize_scratch("left_div_right", *probs.value.shape)

    def evaluate_forward(self) -> None:
        labels, probs = self.inputs
        self.log_of_right.copy_(torch.log(probs.value))
        mask_missing_columns(self.log_of_right, _prediction_layout(self))
        weighted = torch.where(
            labels.value == 0,
            torch.zeros_like(self.log_of_right),
            labels.value * self.log_of_right,
        )
        self._set_loss(-weighted.sum())

    def compute_input_gradient(self, input_index: int) -> None:
        g = self._seed()
        if input_index == 0:
            self._accumulate(0, -g * self.log_of_right)
        elif input_index == 1:
            labels, probs = self.inputs
            ratio = torch.where(
                labels.value == 0,
                torch.zeros_like(self.left_div_right),
                labels.value / probs.value,
            )
            self.left_div_right.copy_(ratio)
            # gap columns are forced to zero even where probs vanish
            mask_missing_columns(self.left_div_right, _prediction_layout(self))
            self._accumulate(1, -g * self.left_div_right)
        else:
            raise self._unsupported_input(input_index)
