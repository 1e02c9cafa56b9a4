r"""Training criterion nodes for computation graphs built on PyTorch tensors.

Each criterion turns predictions and labels into a 1x1 loss and adds its
gradients into its inputs. Minibatches pack several variable-length
sequences side by side; a :class:`MinibatchLayout` marks the padding columns,
which never contribute to a loss or a gradient.

Usage
-----
>>> import torch
>>> from criterion_nodes import InputValue, LearnableParameter, create_criterion_node
>>>
>>> labels = InputValue(torch.eye(2))
>>> logits = LearnableParameter(torch.zeros(2, 2))
>>> node = create_criterion_node("CrossEntropyWithSoftmax", labels, logits)
>>> node.validate()
>>> node.evaluate_forward()
>>> node.backpropagate()
>>> logits.gradient
tensor([[-0.5000,  0.5000],
        [ 0.5000, -0.5000]])
"""

import logging

from .autograd import CriterionFunction, criterion_loss
from .class_based import ClassBasedCrossEntropyWithSoftmax, ClassFrame
from .constants import EPS_IN_INVERSE, NEG_INF
from .crf import (
    CRF,
    crf_backward_beta,
    crf_forward_alpha,
    crf_gold_score,
    crf_transition_gradient,
)
from .cross_entropy import CrossEntropy, CrossEntropyWithSoftmax
from .elementwise import MatrixL1Reg, MatrixL2Reg, SquareError
from .exceptions import CriterionError, CriterionRuntimeError, InvalidArgumentError, LogicError
from .layout import MinibatchLayout, MinibatchPackingFlags
from .nce import NCEEvalMode, NoiseContrastiveEstimation
from .node import (
    ComputationNode,
    CopyNodeFlags,
    CriterionNode,
    InputValue,
    LearnableParameter,
    mask_missing_columns,
)
from .sequence import (
    DummyCriterion,
    FramePosteriorGammaCalculator,
    GammaCalculator,
    SequenceWithSoftmax,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

CRITERION_NODE_TYPES = {
    cls.operation_name: cls
    for cls in (
        SquareError,
        MatrixL1Reg,
        MatrixL2Reg,
        CrossEntropyWithSoftmax,
        CrossEntropy,
        NoiseContrastiveEstimation,
        ClassBasedCrossEntropyWithSoftmax,
        CRF,
        DummyCriterion,
        SequenceWithSoftmax,
    )
}


def create_criterion_node(type_name: str, *inputs: ComputationNode, **kwargs) -> CriterionNode:
    r"""Factory function for criterion nodes.

    Args:
        type_name (str): Persisted operation name, e.g. ``"CrossEntropyWithSoftmax"``
            or ``"NCEBasedCrossEntropyWithSoftmax"``.
        *inputs (ComputationNode): Input nodes, in order.
        **kwargs: Passed to the node constructor.

    Returns:
        CriterionNode: The requested node with ``inputs`` attached.
    """
    try:
        cls = CRITERION_NODE_TYPES[type_name]
    except KeyError:
        raise ValueError(
            f"Unknown criterion node type: {type_name}. "
            f"Options: {', '.join(CRITERION_NODE_TYPES)}"
        ) from None
    return cls(*inputs, **kwargs)


__all__ = [
    # Graph pieces
    "ComputationNode",
    "InputValue",
    "LearnableParameter",
    "CriterionNode",
    "CopyNodeFlags",
    "MinibatchLayout",
    "MinibatchPackingFlags",
    "mask_missing_columns",
    # Criteria
    "SquareError",
    "MatrixL1Reg",
    "MatrixL2Reg",
    "CrossEntropyWithSoftmax",
    "CrossEntropy",
    "NCEEvalMode",
    "NoiseContrastiveEstimation",
    "ClassBasedCrossEntropyWithSoftmax",
    "ClassFrame",
    "CRF",
    "crf_forward_alpha",
    "crf_backward_beta",
    "crf_transition_gradient",
    "crf_gold_score",
    "DummyCriterion",
    "SequenceWithSoftmax",
    "GammaCalculator",
    "FramePosteriorGammaCalculator",
    # Factory and autograd bridge
    "CRITERION_NODE_TYPES",
    "create_criterion_node",
    "CriterionFunction",
    "criterion_loss",
    # Errors and constants
    "CriterionError",
    "LogicError",
    "InvalidArgumentError",
    "CriterionRuntimeError",
    "NEG_INF",
    "EPS_IN_INVERSE",
]
