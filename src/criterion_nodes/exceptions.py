"""
Exceptions raised by criterion nodes.

Three kinds, by severity:
  - LogicError: the graph or its configuration is malformed (wrong input
    role, mismatched dimensions, bad class ranges). Training must abort.
  - InvalidArgumentError: a caller asked for something the node does not
    support, e.g. a gradient with respect to a label input.
  - CriterionRuntimeError: unexpected data, such as an unknown persisted tag
    or a non-finite loss under NaN checking.
"""


class CriterionError(Exception):
    """Base for all criterion node errors."""


class LogicError(CriterionError):
    """Raised when a node is wired or configured inconsistently."""


class InvalidArgumentError(CriterionError, ValueError):
    """Raised when a node operation is called with an unsupported argument."""


class CriterionRuntimeError(CriterionError, RuntimeError):
    """Raised on data a node cannot interpret."""
