r"""Elementwise criteria: squared error and matrix norm regularizers."""

import torch

from .constants import EPS_IN_INVERSE
from .node import CriterionNode, mask_missing_columns
from .validation import validate_same_shape

__all__ = ["SquareError", "MatrixL1Reg", "MatrixL2Reg"]


class SquareError(CriterionNode):
    r"""Half the squared Frobenius distance between two matrices.

    .. math::
        \mathcal{L} = \tfrac{1}{2} \lVert \text{left} - \text{right} \rVert_F^2

    Gap columns of ``left`` are zeroed in the difference before the reduction.

    Args:
        left (ComputationNode): Prediction.
        right (ComputationNode): Target of the same shape.
    """

    operation_name = "SquareError"
    num_inputs = 2
    gradient_inputs = (0, 1)
    scratch_names = ("left_minus_right",)

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        left, right = self.inputs
        if is_final_pass:
            validate_same_shape(self.operation_name, left.value, right.value)
        self._resize_scratch("left_minus_right", *left.value.shape)

    def evaluate_forward(self) -> None:
        left, right = self.inputs
        self.left_minus_right.copy_(left.value - right.value)
        mask_missing_columns(self.left_minus_right, left.layout)
        self._set_loss(0.5 * self.left_minus_right.pow(2).sum())

    def compute_input_gradient(self, input_index: int) -> None:
        if input_index not in self.gradient_inputs:
            raise self._unsupported_input(input_index)
        sign = 1.0 if input_index == 0 else -1.0
        self._accumulate(input_index, (sign * self._seed()) * self.left_minus_right)


class _MaskedNormCriterion(CriterionNode):
    """Single-input criterion over a masked copy of its input."""

    num_inputs = 1
    gradient_inputs = (0,)
    scratch_names = ("masked_input",)

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        self._resize_scratch("masked_input", *self.inputs[0].value.shape)

    def _load_masked_input(self) -> torch.Tensor:
        x = self.inputs[0]
        self.masked_input.copy_(x.value)
        return mask_missing_columns(self.masked_input, x.layout)


class MatrixL1Reg(_MaskedNormCriterion):
    r"""Sum of absolute values: :math:`\mathcal{L} = \sum |x|`.

    The gradient is :math:`g \cdot \operatorname{sign}(x)`, zero at gap columns.
    """

    operation_name = "MatrixL1Reg"

    def evaluate_forward(self) -> None:
        self._set_loss(self._load_masked_input().abs().sum())

    def compute_input_gradient(self, input_index: int) -> None:
        if input_index != 0:
            raise self._unsupported_input(input_index)
        self._accumulate(0, self._seed() * torch.sign(self.masked_input))


class MatrixL2Reg(_MaskedNormCriterion):
    r"""Frobenius norm: :math:`\mathcal{L} = \lVert x \rVert_F`.

    The gradient is :math:`g \cdot x / (\mathcal{L} + \epsilon)` with
    :math:`\epsilon` = ``EPS_IN_INVERSE`` keeping a zero matrix finite.
    """

    operation_name = "MatrixL2Reg"

    def evaluate_forward(self) -> None:
        self._set_loss(torch.linalg.vector_norm(self._load_masked_input()))

    def compute_input_gradient(self, input_index: int) -> None:
        if input_index != 0:
            raise self._unsupported_input(input_index)
        scale = self._seed() / (float(self.value[0, 0]) + EPS_IN_INVERSE)
        self._accumulate(0, scale * self.masked_input)
