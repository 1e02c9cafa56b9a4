#!/usr/bin/env python3
"""Ground-truth correctness validation for criterion nodes.

Validates the hand-written gradients and posteriors with
implementation-independent tests.

Three validation strategies:

1. **Self-consistency** (§1): Do posteriors satisfy probabilistic invariants?
   - CRF marginals sum to 1 over states at every labeled frame
   - Class-based P(w | h) sums to 1 over the vocabulary
   - Padding columns carry zero posteriors and zero gradients

2. **Finite differences** (§2): Do hand-written gradients match numerical ones?
   - Perturb each input entry by ±ε, compute (f(x+ε) - f(x-ε)) / 2ε
   - Compare to compute_input_gradient
   - Runs on a minibatch with one padding column

3. **Training convergence** (§3): Does training through criterion_loss match
   training with torch.nn.functional.cross_entropy?
   - Train the same linear classifier twice from the same initialization
   - Both should reach the same final loss

Usage:
    # Run all three checks (default: medium scale)
    python validate_correctness.py

    # Run individual checks
    python validate_correctness.py --test self-consistency
    python validate_correctness.py --test finite-diff
    python validate_correctness.py --test convergence

    # Scale options
    python validate_correctness.py --scale small    # Quick smoke test
    python validate_correctness.py --scale large    # Thorough (slow)

    # Finite-diff on specific criteria only
    python validate_correctness.py --test finite-diff --criteria crf nce
"""

from __future__ import annotations

import argparse
import math
import sys
import time
from dataclasses import dataclass

import torch
import torch.nn as nn

from criterion_nodes import (
    CRF,
    ClassBasedCrossEntropyWithSoftmax,
    CrossEntropy,
    CrossEntropyWithSoftmax,
    FramePosteriorGammaCalculator,
    InputValue,
    LearnableParameter,
    MatrixL1Reg,
    MatrixL2Reg,
    MinibatchLayout,
    NoiseContrastiveEstimation,
    SequenceWithSoftmax,
    SquareError,
    criterion_loss,
)

DTYPE = torch.float64


# ======================================================================
# Shared utilities
# ======================================================================

@dataclass
class ScaleConfig:
    """Test scale parameters."""
    name: str
    T: int      # timesteps per sequence
    C: int      # classes / states
    H: int      # hidden size
    V: int      # vocabulary size
    fd_eps: float
    # convergence specific
    conv_N: int
    conv_epochs: int


SCALES = {
    "small": ScaleConfig(name="small", T=3, C=3, H=2, V=6, fd_eps=1e-6, conv_N=64, conv_epochs=50),
    "medium": ScaleConfig(name="medium", T=6, C=4, H=4, V=10, fd_eps=1e-6, conv_N=256, conv_epochs=100),
    "large": ScaleConfig(name="large", T=12, C=6, H=8, V=24, fd_eps=1e-6, conv_N=1024, conv_epochs=200),
}


def make_layout(cfg: ScaleConfig, num_sequences: int = 2) -> MinibatchLayout:
    """Two sequences, the second one timestep short: one padding column."""
    lengths = [cfg.T] + [cfg.T - 1] * (num_sequences - 1)
    return MinibatchLayout.from_lengths(lengths, cfg.T)


def one_hot(indices, num_classes):
    labels = torch.zeros(num_classes, len(indices), dtype=DTYPE)
    labels[torch.as_tensor(indices), torch.arange(len(indices))] = 1.0
    return labels


def data(value, layout=None):
    node = InputValue(value, layout, dtype=DTYPE)
    node.needs_gradient = True
    return node


def class_partition(V: int, C: int):
    """Contiguous classes of near-equal size: (class_of, firsts, ends)."""
    bounds = [round(i * V / C) for i in range(C + 1)]
    firsts, ends = bounds[:-1], bounds[1:]
    class_of = [c for c in range(C) for _ in range(ends[c] - firsts[c])]
    return class_of, firsts, ends


def class_labels(words, partition):
    class_of, firsts, ends = partition
    rows = [[w for w in words], [class_of[w] for w in words],
            [firsts[class_of[w]] for w in words], [ends[class_of[w]] for w in words]]
    return torch.tensor(rows, dtype=DTYPE)


def section_header(title):
    width = 72
    print()
    print("=" * width)
    print(f"  {title}")
    print("=" * width)


def result_line(label, passed, detail=""):
    status = "\033[92m[PASS]\033[0m" if passed else "\033[91m[FAIL]\033[0m"
    if detail:
        print(f"  {status} {label}: {detail}")
    else:
        print(f"  {status} {label}")
    return passed


# ======================================================================
# Criterion builders: (node, input indices to check)
# ======================================================================

def build_square_error(cfg, layout):
    N = layout.num_cols
    return SquareError(data(torch.randn(cfg.C, N), layout), data(torch.randn(cfg.C, N)), dtype=DTYPE), [0, 1]


def build_l1(cfg, layout):
    x = torch.randn(cfg.C, layout.num_cols)
    x = x + 0.5 * torch.sign(x)
    return MatrixL1Reg(data(x, layout), dtype=DTYPE), [0]


def build_l2(cfg, layout):
    return MatrixL2Reg(data(torch.randn(cfg.C, layout.num_cols), layout), dtype=DTYPE), [0]


def build_ce_softmax(cfg, layout):
    N = layout.num_cols
    labels = InputValue(one_hot(torch.randint(cfg.C, (N,)), cfg.C), layout, dtype=DTYPE)
    return CrossEntropyWithSoftmax(labels, data(torch.randn(cfg.C, N), layout), dtype=DTYPE), [1]


def build_ce(cfg, layout):
    N = layout.num_cols
    labels = InputValue(one_hot(torch.randint(cfg.C, (N,)), cfg.C), layout, dtype=DTYPE)
    probs = torch.softmax(torch.randn(cfg.C, N), dim=0)
    return CrossEntropy(labels, data(probs, layout), dtype=DTYPE), [1]


def build_nce(cfg, layout):
    N, k = layout.num_cols, 2
    log_q = math.log(1.0 / cfg.V)
    labels = torch.full((2 * (k + 1), N), log_q, dtype=DTYPE)
    labels[0::2] = torch.randint(cfg.V, (k + 1, N)).to(DTYPE)
    node = NoiseContrastiveEstimation(
        InputValue(labels, layout, dtype=DTYPE),
        data(torch.randn(cfg.H, N), layout),
        LearnableParameter(torch.randn(cfg.H, cfg.V), dtype=DTYPE),
        LearnableParameter(torch.randn(1, cfg.V), dtype=DTYPE),
        dtype=DTYPE,
    )
    return node, [1, 2, 3]


def build_class_based(cfg, layout):
    N = layout.num_cols
    num_classes = max(2, cfg.V // 3)
    partition = class_partition(cfg.V, num_classes)
    node = ClassBasedCrossEntropyWithSoftmax(
        InputValue(class_labels(torch.randint(cfg.V, (N,)).tolist(), partition), layout, dtype=DTYPE),
        data(torch.randn(cfg.H, N), layout),
        LearnableParameter(torch.randn(cfg.H, cfg.V), dtype=DTYPE),
        data(torch.randn(num_classes, N), layout),
        dtype=DTYPE,
    )
    return node, [1, 2, 3]


def build_crf(cfg, layout):
    # one sequence with trailing padding
    layout = MinibatchLayout.from_lengths([cfg.T - 1], cfg.T)
    gold = torch.randint(cfg.C, (cfg.T,))
    node = CRF(
        InputValue(one_hot(gold, cfg.C), layout, dtype=DTYPE),
        data(torch.randn(cfg.C, cfg.T), layout),
        LearnableParameter(torch.randn(cfg.C, cfg.C), dtype=DTYPE),
        dtype=DTYPE,
    )
    return node, [1, 2]


def build_sequence(cfg, layout):
    N = layout.num_cols
    logits = data(torch.randn(cfg.C, N), layout)
    node = SequenceWithSoftmax(
        InputValue(one_hot(torch.randint(cfg.C, (N,)), cfg.C), layout, dtype=DTYPE),
        logits,
        logits,
        gamma_calculator=FramePosteriorGammaCalculator(),
        hsmoothing_weight=1.0,
        dtype=DTYPE,
    )
    return node, [1]


BUILDERS = {
    "square-error": build_square_error,
    "l1": build_l1,
    "l2": build_l2,
    "ce-softmax": build_ce_softmax,
    "ce": build_ce,
    "nce": build_nce,
    "class-based": build_class_based,
    "crf": build_crf,
    "sequence": build_sequence,
}


# ======================================================================
# §1  Self-consistency: posterior invariants
# ======================================================================

def test_self_consistency(cfg: ScaleConfig, seed: int) -> bool:
    """Validate that posteriors satisfy known invariants.

      - CRF: Σ_c P(y_t = c) = 1 on labeled frames, 0 on padding
      - Class-based: Σ_w P(w | h) = 1 for a frame
      - Cross entropy with softmax: padding columns get no gradient
    """
    section_header("§1  SELF-CONSISTENCY (Posterior Invariants)")
    torch.manual_seed(seed)
    all_passed = True

    node, _ = build_crf(cfg, None)
    node.validate()
    node.evaluate_forward()
    layout = node.inputs[0].layout
    mask = layout.loss_mask()
    sums = node.post_prob.sum(dim=0)
    max_deviation = (sums[mask] - 1.0).abs().max().item()
    all_passed &= result_line(
        "CRF marginals Σ_c P(c|t) = 1", max_deviation < 1e-9, f"max deviation = {max_deviation:.2e}"
    )
    padding = node.post_prob[:, ~mask].abs().max().item()
    all_passed &= result_line("CRF padding marginals are zero", padding == 0.0, f"max = {padding:.2e}")

    num_classes = max(2, cfg.V // 3)
    partition = class_partition(cfg.V, num_classes)
    node = ClassBasedCrossEntropyWithSoftmax(
        InputValue(class_labels([0], partition), dtype=DTYPE),
        data(torch.randn(cfg.H, 1)),
        LearnableParameter(torch.randn(cfg.H, cfg.V), dtype=DTYPE),
        data(torch.randn(num_classes, 1)),
        dtype=DTYPE,
    )
    node.validate()
    total = 0.0
    for word in range(cfg.V):
        node.inputs[0].value.copy_(class_labels([word], partition))
        node.evaluate_forward()
        total += math.exp(-node.value.item())
    all_passed &= result_line(
        "Class-based Σ_w P(w|h) = 1", abs(total - 1.0) < 1e-9, f"sum = {total:.12f}"
    )

    layout = make_layout(cfg)
    node, _ = build_ce_softmax(cfg, layout)
    node.validate()
    node.evaluate_forward()
    node.backpropagate()
    gap = node.inputs[1].gradient[:, ~layout.loss_mask()].abs().max().item()
    all_passed &= result_line("Padding columns get zero gradient", gap == 0.0, f"max = {gap:.2e}")

    return all_passed


# ======================================================================
# §2  Finite differences (gold standard)
# ======================================================================

def numerical_gradient(node, index, eps):
    value = node.inputs[index].value
    flat = value.view(-1)
    numerical = torch.zeros_like(flat)
    for i in range(flat.numel()):
        orig = flat[i].item()

        flat[i] = orig + eps
        node.evaluate_forward()
        f_plus = node.value.item()

        flat[i] = orig - eps
        node.evaluate_forward()
        f_minus = node.value.item()

        flat[i] = orig  # restore
        numerical[i] = (f_plus - f_minus) / (2 * eps)
    return numerical


def test_finite_differences(cfg: ScaleConfig, seed: int, criteria: list[str] | None = None) -> bool:
    """Compare compute_input_gradient to central differences.

    Pass criteria (per input):
      1. Cosine similarity > 0.999 (directional agreement)
      2. Normalized max error < 5% (magnitude agreement)
         where normalized = max|an - fd| / max(max|an|, max|fd|, eps)
    """
    section_header("§2  FINITE DIFFERENCES (Gold Standard)")

    names = criteria or list(BUILDERS)
    print(f"  Config: T={cfg.T}, C={cfg.C}, H={cfg.H}, V={cfg.V}, eps={cfg.fd_eps:.0e}")
    print(f"  Criteria: {', '.join(names)}")
    print()

    all_passed = True
    for name in names:
        torch.manual_seed(seed)
        node, indices = BUILDERS[name](cfg, make_layout(cfg))
        node.validate()

        for index in indices:
            t0 = time.perf_counter()
            node.evaluate_forward()
            node.gradient = torch.ones(1, 1, dtype=DTYPE)
            node.inputs[index].zero_gradient()
            node.compute_input_gradient(index)
            analytic = node.inputs[index].gradient.reshape(-1).clone()
            numerical = numerical_gradient(node, index, cfg.fd_eps)
            elapsed = time.perf_counter() - t0

            abs_diff = (analytic - numerical).abs()
            if analytic.abs().max() == 0 and numerical.abs().max() == 0:
                cos_sim = 1.0
            else:
                cos_sim = torch.nn.functional.cosine_similarity(
                    analytic.unsqueeze(0), numerical.unsqueeze(0)
                ).item()
            grad_scale = max(analytic.abs().max().item(), numerical.abs().max().item(), 1e-8)
            normalized_max_err = abs_diff.max().item() / grad_scale

            passed = cos_sim > 0.999 and normalized_max_err < 0.05
            all_passed &= result_line(
                f"{name} input {index} ({analytic.numel()} elements, {elapsed:.2f}s)",
                passed,
                f"cos={cos_sim:.8f}, norm_max={normalized_max_err:.2e}",
            )

    return all_passed


# ======================================================================
# §3  Training convergence
# ======================================================================

def test_training_convergence(cfg: ScaleConfig, seed: int) -> bool:
    """Train a linear classifier through criterion_loss and through
    torch.nn.functional.cross_entropy, compare the loss curves.
    """
    section_header("§3  TRAINING CONVERGENCE")

    N, C, H = cfg.conv_N, cfg.C, cfg.H
    n_epochs = cfg.conv_epochs
    lr = 1e-2
    print(f"  Config: N={N}, C={C}, H={H}, epochs={n_epochs}, lr={lr}")
    print()

    torch.manual_seed(seed)
    features = torch.randn(N, H, dtype=DTYPE)
    targets = (features @ torch.randn(H, C, dtype=DTYPE)).argmax(dim=1)
    labels = one_hot(targets, C)

    results = {}
    for backend in ("criterion_nodes", "torch"):
        torch.manual_seed(seed + 1)
        model = nn.Linear(H, C).to(DTYPE)
        optimizer = torch.optim.Adam(model.parameters(), lr=lr)
        node = CrossEntropyWithSoftmax(
            InputValue(dtype=DTYPE), LearnableParameter(dtype=DTYPE), dtype=DTYPE
        )

        losses = []
        t0 = time.perf_counter()
        for _ in range(n_epochs):
            optimizer.zero_grad()
            logits = model(features)
            if backend == "torch":
                loss = nn.functional.cross_entropy(logits, targets, reduction="sum")
            else:
                loss = criterion_loss(node, labels, logits.t())
            loss.backward()
            optimizer.step()
            losses.append(loss.item())
        elapsed = time.perf_counter() - t0
        results[backend] = losses
        print(f"  {backend:>16}: final_loss={losses[-1]:.6f}, time={elapsed:.1f}s")

    ours, reference = results["criterion_nodes"], results["torch"]
    loss_rel = abs(ours[-1] - reference[-1]) / (abs(reference[-1]) + 1e-8)
    all_passed = True
    all_passed &= result_line("Final loss agreement", loss_rel < 1e-6, f"rel_diff={loss_rel:.2e}")
    all_passed &= result_line("Loss decreases", ours[-1] < ours[0])
    return all_passed


# ======================================================================
# Main
# ======================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Ground-truth correctness validation for criterion nodes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--test", "-t",
        choices=["self-consistency", "finite-diff", "convergence", "all"],
        default="all",
        help="Which test to run (default: all)",
    )
    parser.add_argument(
        "--scale", "-s",
        choices=list(SCALES.keys()),
        default="medium",
        help="Test scale (default: medium)",
    )
    parser.add_argument(
        "--criteria",
        nargs="+",
        choices=list(BUILDERS),
        default=None,
        help="Criteria for finite-diff check (default: all)",
    )
    parser.add_argument(
        "--seed", type=int, default=42,
        help="Random seed (default: 42)",
    )
    args = parser.parse_args()

    cfg = SCALES[args.scale]

    print("=" * 72)
    print("  CRITERION NODES: GROUND-TRUTH CORRECTNESS VALIDATION")
    print("=" * 72)
    print(f"  Scale: {cfg.name}")
    print(f"  PyTorch: {torch.__version__}")

    tests_to_run = (
        ["self-consistency", "finite-diff", "convergence"]
        if args.test == "all"
        else [args.test]
    )

    overall_passed = True
    results_summary = []
    for test_name in tests_to_run:
        if test_name == "self-consistency":
            passed = test_self_consistency(cfg, args.seed)
        elif test_name == "finite-diff":
            passed = test_finite_differences(cfg, args.seed, criteria=args.criteria)
        else:
            passed = test_training_convergence(cfg, args.seed)
        results_summary.append((test_name, passed))
        overall_passed &= passed

    section_header("SUMMARY")
    for name, passed in results_summary:
        status = "\033[92mPASS\033[0m" if passed else "\033[91mFAIL\033[0m"
        print(f"  {status}  {name}")

    print()
    if overall_passed:
        print("  ✓ ALL TESTS PASSED")
    else:
        print("  ✗ SOME TESTS FAILED")
        print("  Review the detailed output above for diagnostics.")
    print("=" * 72)
    return 0 if overall_passed else 1


if __name__ == "__main__":
    sys.exit(main())
