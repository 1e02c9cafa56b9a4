r"""Shared constants for criterion nodes.

Attributes:
    NEG_INF (float): Negative infinity approximation used for log-space computations.
        Set to ``-1e9`` to avoid numerical issues with ``float('-inf')``.
    EPS_IN_INVERSE (float): Guard added to a norm before dividing by it.
    NANCHECK (bool): Verify every forward loss is finite. Enabled by setting
        ``CRITERION_NODES_NANCHECK=1`` in the environment.
"""

import os

NEG_INF = -1e9

EPS_IN_INVERSE = 1e-30

NANCHECK = os.environ.get("CRITERION_NODES_NANCHECK", "0") == "1"
