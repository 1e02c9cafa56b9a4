r"""Input validation utilities for criterion nodes."""

import warnings

import torch
from torch import Tensor

from .exceptions import LogicError

__all__ = [
    "validate_num_inputs",
    "validate_input_role",
    "validate_same_shape",
    "validate_one_hot_labels",
    "validate_class_range",
    "validate_device_consistency",
    "validate_float_dtype",
]


def validate_num_inputs(node_name: str, inputs: list, expected: int) -> None:
    r"""Validate node arity.

    Args:
        node_name (str): Name for error messages.
        inputs (list): Attached input nodes.
        expected (int): Number of inputs the node type takes.

    Raises:
        LogicError: If the number of inputs differs or an input is missing.
    """
    if len(inputs) != expected:
        raise LogicError(f"{node_name} takes {expected} inputs, got {len(inputs)}")
    for i, node in enumerate(inputs):
        if node is None:
            raise LogicError(f"{node_name}: input {i} is not connected")


def validate_input_role(
    node_name: str,
    input_node,
    index: int,
    role: str = "the label",
    allowed: tuple[str, ...] = ("InputValue",),
) -> None:
    r"""Validate that an input comes from a leaf node of an allowed operation.

    Args:
        node_name (str): Name for error messages.
        input_node: The input node to check.
        index (int): Input position, for error messages.
        role (str, optional): What the input is expected to be. Default: ``"the label"``
        allowed (tuple[str, ...], optional): Accepted operation names.
            Default: ``("InputValue",)``

    Raises:
        LogicError: If the input's operation name is not in ``allowed``.
    """
    if input_node.operation_name not in allowed:
        raise LogicError(
            f"{node_name} criterion requires input {index} to be {role} "
            f"({' or '.join(allowed)}), got {input_node.operation_name}"
        )


def validate_same_shape(
    node_name: str,
    first: Tensor,
    second: Tensor,
    names: tuple[str, str] = ("input 0", "input 1"),
) -> None:
    r"""Validate that two operands have identical shapes.

    Raises:
        LogicError: If the shapes differ.
    """
    if first.shape != second.shape:
        raise LogicError(
            f"The matrix dimensions in the {node_name} operation do not match: "
            f"{names[0]} is {tuple(first.shape)}, {names[1]} is {tuple(second.shape)}"
        )


def validate_one_hot_labels(labels: Tensor, name: str = "labels") -> Tensor:
    r"""Validate one-hot label columns and return the label index per column.

    The index of a column is its first non-zero row.

    Args:
        labels (Tensor): Labels of shape :math:`(C, N)`.
        name (str, optional): Name for error messages. Default: ``"labels"``

    Returns:
        Tensor: ``long`` tensor of shape :math:`(N,)`.

    Raises:
        LogicError: If a column has no non-zero entry.
    """
    nonzero = labels != 0
    has_label = nonzero.any(dim=0)
    if not bool(has_label.all()):
        missing = torch.nonzero(~has_label).flatten().tolist()
        raise LogicError(f"{name} must be one-hot per column; columns {missing} are empty")
    # argmax returns the first maximal index, i.e. the first non-zero row
    return nonzero.long().argmax(dim=0)


def validate_class_range(node_name: str, word: int, first: int, end: int, column: int) -> None:
    r"""Validate a class-based label frame.

    Args:
        node_name (str): Name for error messages.
        word (int): Labeled word index.
        first (int): First word index of the word's class.
        end (int): First word index of the next class.
        column (int): Minibatch column, for error messages.

    Raises:
        LogicError: If the class is empty or the word is not one of its members.
    """
    if end - first <= 0:
        raise LogicError(
            f"{node_name}: encountered a class of size {end - first} at column {column}. "
            f"This sample seems to lack a NO_INPUT flag."
        )
    if word < first or word >= end:
        raise LogicError(
            f"{node_name}: word index {word} at column {column} is out of bounds of the "
            f"class-member index range [{first}, {end}) (word not a class member)."
        )


def validate_device_consistency(node_name: str, inputs: dict) -> None:
    r"""Validate that the dense operands of a node share one device.

    Args:
        node_name (str): Name for error messages.
        inputs (dict): Role name to input node. ``None`` entries are skipped.

    Raises:
        LogicError: If the operands live on more than one device.
    """
    devices = {
        role: node.value.device
        for role, node in inputs.items()
        if node is not None
    }
    if len(set(devices.values())) > 1:
        placement = ", ".join(f"{role} on {device}" for role, device in devices.items())
        raise LogicError(f"{node_name}: inputs are on different devices ({placement})")


def validate_float_dtype(tensor: Tensor, name: str, warn_half: bool = True) -> None:
    r"""Validate a floating-point operand.

    Args:
        tensor (Tensor): Operand to check.
        name (str): Name for error messages.
        warn_half (bool, optional): Warn for 16-bit floats. Default: ``True``

    Raises:
        LogicError: If the tensor is not floating point.
    """
    if not tensor.is_floating_point():
        raise LogicError(f"{name} must be a floating-point tensor, got {tensor.dtype}")
    if warn_half and tensor.dtype in (torch.float16, torch.bfloat16):
        warnings.warn(
            f"{name} is {tensor.dtype}; log-domain recursions lose precision in 16-bit "
            f"floats. float32 or float64 is recommended.",
            UserWarning,
            stacklevel=3,
        )
