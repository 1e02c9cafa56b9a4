r"""Computation nodes and the shared criterion node contract.

Only the pieces of a computation graph that criterion nodes touch live here:
leaf nodes that carry labels, features and parameters, and the
:class:`CriterionNode` base class. Graph construction and evaluation order
belong to the caller.

A criterion node reads its inputs' ``value`` matrices, writes a 1x1 loss into
its own ``value`` and, on request, adds gradients into its inputs'
``gradient`` matrices::

    node.validate(is_final_pass=True)
    node.evaluate_forward()
    node.backpropagate(seed=1.0)   # compute_input_gradient(i) for each input
"""

import copy
import enum
import logging
import math
from abc import ABC, abstractmethod
from typing import Optional

import torch
from torch import Tensor

from . import constants
from .exceptions import CriterionRuntimeError, InvalidArgumentError, LogicError
from .layout import MinibatchLayout
from .validation import validate_num_inputs

logger = logging.getLogger(__name__)

__all__ = [
    "CopyNodeFlags",
    "ComputationNode",
    "InputValue",
    "LearnableParameter",
    "CriterionNode",
    "mask_missing_columns",
]


class CopyNodeFlags(enum.IntFlag):
    r"""What :meth:`CriterionNode.copy_to` copies besides configuration."""

    NONE = 0
    VALUE = 1
    CHILDREN = 2
    ALL = VALUE | CHILDREN


def mask_missing_columns(matrix: Tensor, layout: Optional[MinibatchLayout]) -> Tensor:
    r"""mask_missing_columns(matrix, layout) -> Tensor

    Zero, in place, every column of ``matrix`` that carries no label.

    Assignment is used rather than multiplication so that ``inf`` and ``nan``
    entries in masked columns are cleared as well.

    Args:
        matrix (Tensor): Matrix of shape :math:`(\text{rows}, S \cdot T)`.
        layout (MinibatchLayout, optional): Layout of the matrix. ``None`` masks nothing.

    Returns:
        Tensor: ``matrix`` itself.
    """
    if layout is None or layout.is_all_none():
        return matrix
    if matrix.shape[-1] != layout.num_cols:
        raise LogicError(
            f"matrix has {matrix.shape[-1]} columns but its layout describes {layout.num_cols}"
        )
    mask = layout.loss_mask(matrix.device)
    matrix[:, ~mask] = 0
    return matrix


class ComputationNode:
    r"""A node of the computation graph as seen by criterion nodes.

    Args:
        name (str, optional): Node name. Default: the operation name
        device (str or torch.device, optional): Device of the node's matrices. Default: ``"cpu"``
        dtype (torch.dtype, optional): Element type. Default: ``torch.float32``

    Attributes:
        value (Tensor): Function value of the node.
        gradient (Tensor): Gradient of the training criterion with respect to ``value``.
            Consumers add into it; allocated lazily by :meth:`gradient_values`.
        layout (MinibatchLayout): Minibatch layout of ``value``, or ``None``.
        needs_gradient (bool): Whether consumers should propagate a gradient here.
    """

    operation_name = "ComputationNode"

    def __init__(self, name: Optional[str] = None, device="cpu", dtype=torch.float32):
        self.name = name or self.operation_name
        self.device = torch.device(device)
        self.dtype = dtype
        self.value = torch.zeros(0, 0, device=self.device, dtype=dtype)
        self.gradient = None
        self.layout = None
        self.needs_gradient = False

    @property
    def num_rows(self) -> int:
        return self.value.shape[0]

    @property
    def num_cols(self) -> int:
        return self.value.shape[1]

    def set_value(self, value: Tensor, layout: Optional[MinibatchLayout] = None) -> None:
        r"""Replace the node's value (and layout) with a 2D matrix."""
        if value.ndim != 2:
            raise LogicError(f"{self.name}: node values must be 2D matrices, got {value.ndim}D")
        if value.is_floating_point():
            value = value.to(device=self.device, dtype=self.dtype)
        else:
            value = value.to(device=self.device)
        self.value = value
        self.layout = layout

    def gradient_values(self) -> Tensor:
        r"""Gradient matrix, allocated as zeros if missing or stale in shape."""
        if (
            self.gradient is None
            or self.gradient.shape != self.value.shape
            or self.gradient.device != self.value.device
        ):
            self.gradient = torch.zeros(
                self.value.shape, device=self.value.device, dtype=self.dtype
            )
        return self.gradient

    def zero_gradient(self) -> None:
        self.gradient = None
        self.gradient_values()

    def move_to_device(self, device) -> None:
        device = torch.device(device)
        if device == self.device:
            return
        self.value = self.value.to(device)
        if self.gradient is not None:
            self.gradient = self.gradient.to(device)
        self.device = device

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, shape={tuple(self.value.shape)})"


class InputValue(ComputationNode):
    r"""Leaf node fed from data: labels or features.

    Args:
        value (Tensor, optional): Initial value. Default: ``None``
        layout (MinibatchLayout, optional): Layout of ``value``. Default: ``None``
        **kwargs: Passed to :class:`ComputationNode`.
    """

    operation_name = "InputValue"

    def __init__(self, value: Optional[Tensor] = None, layout=None, **kwargs):
        super().__init__(**kwargs)
        if value is not None:
            self.set_value(value, layout)


class LearnableParameter(ComputationNode):
    r"""Leaf node holding a trainable matrix. It never has a minibatch layout."""

    operation_name = "LearnableParameter"

    def __init__(self, value: Optional[Tensor] = None, **kwargs):
        super().__init__(**kwargs)
        self.needs_gradient = True
        if value is not None:
            self.set_value(value)


class CriterionNode(ComputationNode, ABC):
    r"""Base class for training criterion nodes.

    A criterion node has a fixed number of inputs, shared by reference with
    other consumers, and produces a 1x1 loss. Subclasses declare:

    - ``num_inputs``: arity of the node type.
    - ``gradient_inputs``: input indices a gradient may be requested for.
    - ``scratch_names``: attributes holding scratch matrices that are filled by
      :meth:`evaluate_forward` and read back by :meth:`compute_input_gradient`.
    - ``own_masking``: whether the node masks gap columns itself.

    Args:
        *inputs (ComputationNode): Input nodes, in order.
        name (str, optional): Node name. Default: the operation name
        device (str or torch.device, optional): Device of the scratch matrices. Default: ``"cpu"``
        dtype (torch.dtype, optional): Element type. Default: ``torch.float32``
    """

    operation_name = "CriterionNode"
    num_inputs = 0
    gradient_inputs: tuple[int, ...] = ()
    scratch_names: tuple[str, ...] = ()
    own_masking = True

    # attributes shared by reference between a node and its copies
    _shared_attributes: tuple[str, ...] = ("inputs", "device", "dtype")

    def __init__(self, *inputs: ComputationNode, name=None, device="cpu", dtype=torch.float32):
        super().__init__(name=name, device=device, dtype=dtype)
        self.inputs = []
        self.value = torch.zeros(1, 1, device=self.device, dtype=dtype)
        self.gradient = torch.ones(1, 1, device=self.device, dtype=dtype)
        self._reset_scratch()
        if inputs:
            self.attach_inputs(*inputs)

    def attach_inputs(self, *inputs: ComputationNode) -> None:
        validate_num_inputs(self.operation_name, list(inputs), self.num_inputs)
        self.inputs = list(inputs)

    def input(self, index: int) -> ComputationNode:
        return self.inputs[index]

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def validate(self, is_final_pass: bool = True) -> None:
        r"""Check arity and shapes, then size the scratch matrices.

        Subclasses extend this. Checks that need concrete dimensions run only
        when ``is_final_pass`` is set.

        Raises:
            LogicError: If the inputs are inconsistent.
        """
        validate_num_inputs(self.operation_name, self.inputs, self.num_inputs)
        if self.value.shape != (1, 1):
            self.value = torch.zeros(1, 1, device=self.device, dtype=self.dtype)
        # the loss is a pure scalar and holds no minibatch data
        self.layout = None

    @abstractmethod
    def evaluate_forward(self) -> None:
        r"""Compute the loss from the inputs' current values into ``value``."""
        raise NotImplementedError

    @abstractmethod
    def compute_input_gradient(self, input_index: int) -> None:
        r"""Add this node's gradient contribution into ``inputs[input_index].gradient``."""
        raise NotImplementedError

    def backpropagate(self, seed: float = 1.0) -> None:
        r"""Seed the output gradient and propagate it into every input that needs one.

        Args:
            seed (float, optional): Upstream gradient of the loss. Default: ``1.0``
        """
        self.gradient = torch.full((1, 1), seed, device=self.device, dtype=self.dtype)
        for index in self.gradient_inputs:
            if self.inputs[index].needs_gradient:
                self.compute_input_gradient(index)

    def move_to_device(self, device) -> None:
        r"""Move the loss, its gradient and every scratch matrix to ``device``.

        Calling it again with the same device does nothing.
        """
        device = torch.device(device)
        if device == self.device:
            return
        super().move_to_device(device)
        for name in self.scratch_names:
            setattr(self, name, getattr(self, name).to(device))
        logger.debug("%s: moved %d scratch matrices to %s", self.name, len(self.scratch_names), device)

    def copy_to(self, other: "CriterionNode", flags: CopyNodeFlags = CopyNodeFlags.ALL) -> None:
        r"""Copy this node's configuration, and optionally its state, into ``other``.

        Args:
            other (CriterionNode): Node of the same type to overwrite.
            flags (CopyNodeFlags, optional): ``VALUE`` deep-copies the loss and scratch
                state; ``CHILDREN`` shares the input references. Default: ``CopyNodeFlags.ALL``

        Raises:
            LogicError: If ``other`` is of a different type.
        """
        if type(other) is not type(self):
            raise LogicError(
                f"cannot copy {type(self).__name__} into {type(other).__name__}"
            )
        for key, val in self.__dict__.items():
            if key == "inputs":
                other.inputs = list(val) if flags & CopyNodeFlags.CHILDREN else []
            elif key in self._shared_attributes:
                other.__dict__[key] = val
            else:
                other.__dict__[key] = copy.deepcopy(val)
        if not flags & CopyNodeFlags.VALUE:
            other._reset_scratch()

    def clone(self, flags: CopyNodeFlags = CopyNodeFlags.ALL, name: Optional[str] = None):
        r"""clone(flags=CopyNodeFlags.ALL, name=None) -> CriterionNode

        Return a new node of the same type, filled by :meth:`copy_to`.
        """
        node = self.__class__.__new__(self.__class__)
        node.__dict__["inputs"] = []
        self.copy_to(node, flags)
        if name is not None:
            node.name = name
        return node

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _reset_scratch(self) -> None:
        for name in self.scratch_names:
            setattr(self, name, torch.zeros(0, 0, device=self.device, dtype=self.dtype))

    def _resize_scratch(self, name: str, rows: int, cols: int) -> None:
        tensor = getattr(self, name)
        if tensor.shape != (rows, cols) or tensor.device != self.device:
            setattr(self, name, torch.zeros(rows, cols, device=self.device, dtype=self.dtype))
            logger.debug("%s: resized %s to (%d, %d)", self.name, name, rows, cols)

    def _seed(self) -> float:
        return float(self.gradient[0, 0])

    def _set_loss(self, loss: Tensor) -> None:
        self.value = loss.detach().reshape(1, 1).to(device=self.device, dtype=self.dtype)
        if constants.NANCHECK and not math.isfinite(float(self.value[0, 0])):
            raise CriterionRuntimeError(f"{self.name} ({self.operation_name}): loss is not finite")

    def _accumulate(self, index: int, delta: Tensor) -> None:
        grad = self.inputs[index].gradient_values()
        grad.add_(delta.to(device=grad.device, dtype=grad.dtype))

    def _unsupported_input(self, index: int) -> InvalidArgumentError:
        return InvalidArgumentError(
            f"{self.operation_name} only computes gradients with respect to inputs "
            f"{list(self.gradient_inputs)}, got input {index}"
        )
