r"""Class-based (two-level) softmax cross entropy for large vocabularies.

Words are grouped into classes occupying contiguous column ranges of the
output weight matrix. For a frame with hidden vector :math:`h`, word
:math:`w` and class :math:`c`:

.. math::
    \log P(w \mid h) = \log \operatorname{softmax}(z)_c
        + \log \operatorname{softmax}(h^\top W_{:, \text{first}:\text{end}})_{w - \text{first}}

where :math:`z` are the class logits. Class sizes vary per frame, so the
within-class distributions of a minibatch are packed back to back into flat
``1 x total`` buffers. Forward and backward walk the frames with the same
iterator, which is what keeps their packing offsets identical.

Label layout, :math:`4 \times T`, one column per frame::

    row 0   word index
    row 1   class index
    row 2   first word index of the class
    row 3   first word index of the next class
"""

import logging
from collections.abc import Iterator
from typing import NamedTuple

import torch

from .exceptions import InvalidArgumentError, LogicError
from .node import CriterionNode
from .validation import validate_class_range, validate_input_role

logger = logging.getLogger(__name__)

__all__ = ["ClassFrame", "ClassBasedCrossEntropyWithSoftmax"]


class ClassFrame(NamedTuple):
    r"""One label-carrying frame and its slot in the packed buffers."""

    column: int
    word: int
    cls: int
    first: int
    end: int
    offset: int

    @property
    def size(self) -> int:
        return self.end - self.first

    @property
    def packed(self) -> slice:
        return slice(self.offset, self.offset + self.size)


class ClassBasedCrossEntropyWithSoftmax(CriterionNode):
    r"""Cross entropy of a class-factored softmax.

    The label matrix must live in host memory: frames are visited one at a
    time and their class boundaries are read as Python integers.

    Args:
        labels (InputValue): Label matrix of shape :math:`(4, N)` on CPU.
        hidden (ComputationNode): Hidden activations of shape :math:`(H, N)`.
        weights (LearnableParameter): Output weights of shape :math:`(H, V)`,
            columns ordered by class.
        class_logits (ComputationNode): Unnormalized class scores of shape :math:`(C, N)`.

    Attributes:
        need_recompute (bool): Set by :meth:`evaluate_forward`; cleared once the
            packed softmax gradient has been rebuilt for the backward pass.
    """

    operation_name = "ClassBasedCrossEntropyWithSoftmax"
    num_inputs = 4
    gradient_inputs = (1, 2, 3)
    scratch_names = (
        "cls_log_softmax",
        "cls_softmax",
        "log_softmax",
        "softmax",
        "grad_to_softmax_input",
    )

    def __init__(self, *inputs, **kwargs):
        self.need_recompute = False
        self.total_words = 0
        super().__init__(*inputs, **kwargs)

    def validate(self, is_final_pass: bool = True) -> None:
        super().validate(is_final_pass)
        labels, hidden, weights, class_logits = self.inputs
        validate_input_role(self.operation_name, labels, 0)
        if is_final_pass:
            if labels.num_rows != 4:
                raise LogicError(
                    f"{self.operation_name}: labels must have 4 rows "
                    f"(word, class, first word, next class first word), got {labels.num_rows}"
                )
            if hidden.num_rows != weights.num_rows:
                raise LogicError(
                    f"{self.operation_name}: hidden has {hidden.num_rows} rows but the "
                    f"weight matrix has {weights.num_rows}"
                )
        layouts = (labels.layout, hidden.layout, class_logits.layout)
        if any(layout != layouts[0] for layout in layouts[1:]):
            raise InvalidArgumentError(
                f"{self.operation_name}: labels, hidden and class logits must share one minibatch layout"
            )
        self._resize_scratch("cls_log_softmax", *class_logits.value.shape)
        self._resize_scratch("cls_softmax", *class_logits.value.shape)

    def iter_class_frames(self) -> Iterator[ClassFrame]:
        r"""Yield every label-carrying frame with its packed-buffer offset.

        Frames come in a fixed order, sequences outermost and timesteps
        innermost, and ``offset`` is the running sum of the class sizes of the
        frames before it.

        Raises:
            LogicError: If a class is empty or a word lies outside its class range.
        """
        labels = self.inputs[0]
        words, classes, firsts, ends = labels.value[:4].long().tolist()
        if labels.layout is None:
            columns = range(labels.num_cols)
        else:
            columns = (column for _, _, column in labels.layout.iter_loss_frames())

        offset = 0
        for column in columns:
            word, first, end = words[column], firsts[column], ends[column]
            validate_class_range(self.operation_name, word, first, end, column)
            yield ClassFrame(column, word, classes[column], first, end, offset)
            offset += end - first

    def evaluate_forward(self) -> None:
        labels, hidden, weights, class_logits = self.inputs
        if labels.value.device.type != "cpu":
            raise LogicError(
                f"{self.operation_name}: the label matrix must reside on the CPU; class "
                f"boundaries are read frame by frame (found {labels.value.device})"
            )

        self.cls_log_softmax.copy_(torch.log_softmax(class_logits.value, dim=0))
        torch.exp(self.cls_log_softmax, out=self.cls_softmax)

        frames = list(self.iter_class_frames())
        self.total_words = sum(frame.size for frame in frames)
        self._resize_scratch("log_softmax", 1, self.total_words)
        self._resize_scratch("softmax", 1, self.total_words)

        loss = torch.zeros((), device=self.device, dtype=self.dtype)
        for frame in frames:
            obs = hidden.value[:, frame.column]
            log_sm = torch.log_softmax(obs @ weights.value[:, frame.first:frame.end], dim=0)
            self.log_softmax[0, frame.packed] = log_sm
            loss = loss + log_sm[frame.word - frame.first] + self.cls_log_softmax[frame.cls, frame.column]
        torch.exp(self.log_softmax, out=self.softmax)
        logger.debug(
            "%s: packed %d frames into %d class-conditional entries",
            self.name,
            len(frames),
            self.total_words,
        )

        self._set_loss(-loss)
        self.need_recompute = True

    def _compute_softmax_partial(self) -> None:
        if not self.need_recompute:
            return
        self._resize_scratch("grad_to_softmax_input", 1, self.total_words)
        self.grad_to_softmax_input.copy_(self.softmax)
        for frame in self.iter_class_frames():
            self.grad_to_softmax_input[0, frame.offset + frame.word - frame.first] -= 1.0
        self.need_recompute = False

    def compute_input_gradient(self, input_index: int) -> None:
        if input_index not in self.gradient_inputs:
            raise InvalidArgumentError(
                f"{self.operation_name} only computes gradients with respect to the hidden "
                f"input, its weights and the class logits, got input {input_index}"
            )
        self._compute_softmax_partial()

        _, hidden, weights, class_logits = self.inputs
        grad = self.inputs[input_index].gradient_values()
        g = self._seed()
        for frame in self.iter_class_frames():
            grad_slice = g * self.grad_to_softmax_input[0, frame.packed].to(grad.dtype)
            if input_index == 1:
                grad[:, frame.column] += weights.value[:, frame.first:frame.end] @ grad_slice
            elif input_index == 2:
                obs = hidden.value[:, frame.column]
                grad[:, frame.first:frame.end] += torch.outer(obs, grad_slice)
            else:
                delta = self.cls_softmax[:, frame.column].clone()
                delta[frame.cls] -= 1.0
                grad[:, frame.column] += g * delta.to(grad.dtype)
