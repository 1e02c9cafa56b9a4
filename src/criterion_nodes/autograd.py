"""Autograd bridge for criterion nodes.

This module wraps a criterion node in a torch.autograd.Function so its
hand-written gradients can be used from ordinary PyTorch code and checked
with :func:`torch.autograd.gradcheck`.
"""

import torch

from .exceptions import LogicError
from .node import CriterionNode


class CriterionFunction(torch.autograd.Function):
    r"""Autograd function running a criterion node's forward and backward passes.

    The node keeps its own scratch state between the two passes, so one node
    instance must not be shared by two graphs that are alive at the same time.

    Note:
        This class is used internally by :func:`criterion_loss`.
        Users should call that function directly rather than using this class.
    """

    @staticmethod
    def forward(ctx, node: CriterionNode, *tensors: torch.Tensor) -> torch.Tensor:
        # Load detached values, keeping each input's layout
        for input_node, tensor in zip(node.inputs, tensors):
            input_node.set_value(tensor.detach(), input_node.layout)

        node.validate(is_final_pass=True)
        node.evaluate_forward()

        ctx.node = node
        return node.value.reshape(()).clone()

    @staticmethod
    def backward(ctx, grad_output: torch.Tensor):
        node = ctx.node
        node.gradient = grad_output.detach().reshape(1, 1).to(device=node.device, dtype=node.dtype)

        grads = []
        for index, input_node in enumerate(node.inputs):
            # needs_input_grad[0] belongs to the node argument
            if index in node.gradient_inputs and ctx.needs_input_grad[index + 1]:
                # Compute into a fresh buffer; the node-level gradient is restored
                accumulated = input_node.gradient
                input_node.gradient = None
                try:
                    node.compute_input_gradient(index)
                    grads.append(input_node.gradient_values())
                finally:
                    input_node.gradient = accumulated
            else:
                grads.append(None)

        return (None, *grads)


def criterion_loss(node: CriterionNode, *tensors: torch.Tensor) -> torch.Tensor:
    r"""criterion_loss(node, *tensors) -> Tensor

    Evaluate ``node`` on ``tensors`` as a differentiable PyTorch loss.

    Each tensor becomes the value of the corresponding input node; the input
    nodes' layouts are left as they are.

    Args:
        node (CriterionNode): Criterion with its inputs attached.
        *tensors (Tensor): One 2D value per input, in input order.

    Returns:
        Tensor: 0-dim loss. Backward yields gradients for the inputs listed in
        ``node.gradient_inputs`` and ``None`` for the rest.

    Raises:
        LogicError: If the number of tensors differs from the node's arity.

    Examples::

        >>> labels = InputValue(dtype=torch.float64)
        >>> logits = LearnableParameter(dtype=torch.float64)
        >>> node = CrossEntropyWithSoftmax(labels, logits, dtype=torch.float64)
        >>> y = torch.eye(3, 4, dtype=torch.float64)
        >>> z = torch.randn(3, 4, dtype=torch.float64, requires_grad=True)
        >>> loss = criterion_loss(node, y, z)
        >>> loss.backward()
    """
    if len(tensors) != node.num_inputs:
        raise LogicError(
            f"{node.operation_name} takes {node.num_inputs} inputs, got {len(tensors)} tensors"
        )
    return CriterionFunction.apply(node, *tensors)
