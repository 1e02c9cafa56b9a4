r"""Minibatch layout describing packed parallel sequences.

A minibatch matrix has shape :math:`(\text{rows}, S \cdot T)` where column
``j = t * S + s`` holds timestep ``t`` of parallel sequence ``s``. Sequences
of different lengths are packed side by side, so some columns are padding
gaps that carry neither features nor labels.

Examples::

    >>> layout = MinibatchLayout.from_lengths([3, 2], num_time_steps=3)
    >>> layout.is_gap(1, 2)
    True
    >>> layout.loss_mask().tolist()
    [True, True, True, True, True, False]
"""

import enum
from collections.abc import Iterator, Sequence
from typing import Optional

import torch
from torch import Tensor

__all__ = ["MinibatchPackingFlags", "MinibatchLayout"]


class MinibatchPackingFlags(enum.IntFlag):
    r"""Per-(sequence, timestep) packing flags."""

    NONE = 0
    SEQUENCE_START = 1
    SEQUENCE_END = 2
    NO_FEATURE = 4
    NO_LABEL = 8
    NO_INPUT = NO_FEATURE | NO_LABEL


class MinibatchLayout:
    r"""Flags for every (sequence, timestep) slot of a packed minibatch.

    Args:
        num_parallel_sequences (int): Number of sequences packed side by side (S).
        num_time_steps (int): Number of timesteps per sequence slot (T).

    Attributes:
        flags (Tensor): ``uint8`` tensor of shape :math:`(S, T)`, always on CPU.
    """

    def __init__(self, num_parallel_sequences: int, num_time_steps: int):
        if num_parallel_sequences < 1:
            raise ValueError(
                f"num_parallel_sequences must be positive, got {num_parallel_sequences}"
            )
        if num_time_steps < 0:
            raise ValueError(f"num_time_steps must be non-negative, got {num_time_steps}")
        self.num_parallel_sequences = num_parallel_sequences
        self.num_time_steps = num_time_steps
        self.flags = torch.zeros(num_parallel_sequences, num_time_steps, dtype=torch.uint8)

    @classmethod
    def from_lengths(cls, lengths: Sequence[int], num_time_steps: Optional[int] = None):
        r"""from_lengths(lengths, num_time_steps=None) -> MinibatchLayout

        Build a layout for sequences that all start at timestep 0.

        Timesteps at or beyond a sequence's length are marked as gaps.

        Args:
            lengths (Sequence[int]): Length of each parallel sequence.
            num_time_steps (int, optional): Number of timesteps. Default: ``max(lengths)``

        Returns:
            MinibatchLayout: The populated layout.
        """
        lengths = [int(n) for n in lengths]
        if num_time_steps is None:
            num_time_steps = max(lengths)
        layout = cls(len(lengths), num_time_steps)
        for s, n in enumerate(lengths):
            if n > num_time_steps:
                raise ValueError(f"length {n} of sequence {s} exceeds T={num_time_steps}")
            if n > 0:
                layout.set(s, 0, MinibatchPackingFlags.SEQUENCE_START)
                layout.set(s, n - 1, MinibatchPackingFlags.SEQUENCE_END)
            for t in range(n, num_time_steps):
                layout.set(s, t, MinibatchPackingFlags.NO_INPUT)
        return layout

    @property
    def num_cols(self) -> int:
        return self.num_parallel_sequences * self.num_time_steps

    def column_index(self, s: int, t: int) -> int:
        return t * self.num_parallel_sequences + s

    def set(self, s: int, t: int, flags: MinibatchPackingFlags) -> None:
        r"""Add ``flags`` to slot ``(s, t)``."""
        self.flags[s, t] |= int(flags)

    def set_gap(self, s: int, t: int) -> None:
        self.set(s, t, MinibatchPackingFlags.NO_INPUT)

    def has_flag(self, s: int, t: int, flags: MinibatchPackingFlags) -> bool:
        r"""True if any bit of ``flags`` is set at slot ``(s, t)``."""
        return bool(int(self.flags[s, t]) & int(flags))

    def is_gap(self, s: int, t: int) -> bool:
        no_input = int(MinibatchPackingFlags.NO_INPUT)
        return (int(self.flags[s, t]) & no_input) == no_input

    def is_no_label(self, s: int, t: int) -> bool:
        return self.has_flag(s, t, MinibatchPackingFlags.NO_LABEL)

    def is_all_none(self) -> bool:
        r"""True if no slot lacks features or labels."""
        missing = int(MinibatchPackingFlags.NO_INPUT)
        return not bool((self.flags & missing).any())

    def loss_mask(self, device=None) -> Tensor:
        r"""loss_mask(device=None) -> Tensor

        Boolean mask over columns, ``False`` where the column carries no label.

        Args:
            device (torch.device, optional): Device of the returned mask. Default: CPU

        Returns:
            Tensor: Mask of shape :math:`(S \cdot T,)`.
        """
        no_label = (self.flags & int(MinibatchPackingFlags.NO_LABEL)) != 0
        # flags are (S, T); columns run t-major
        mask = ~no_label.t().reshape(-1)
        if device is not None:
            mask = mask.to(device)
        return mask

    def iter_loss_frames(self) -> Iterator[tuple[int, int, int]]:
        r"""Yield ``(s, t, column)`` for every label-carrying slot.

        The order is fixed: sequences outermost, timesteps innermost.
        """
        for s in range(self.num_parallel_sequences):
            for t in range(self.num_time_steps):
                if self.is_no_label(s, t):
                    continue
                yield s, t, self.column_index(s, t)

    def __eq__(self, other) -> bool:
        if not isinstance(other, MinibatchLayout):
            return NotImplemented
        return (
            self.num_parallel_sequences == other.num_parallel_sequences
            and self.num_time_steps == other.num_time_steps
            and torch.equal(self.flags, other.flags)
        )

    def __repr__(self) -> str:
        gaps = int((~self.loss_mask()).sum())
        return (
            f"MinibatchLayout(S={self.num_parallel_sequences}, "
            f"T={self.num_time_steps}, masked_cols={gaps})"
        )
