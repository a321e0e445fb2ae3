"""Self-consistent learning of the error model from filtered reads."""

import logging
import math
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
from tqdm import tqdm

from ampdenoise.denoise import DenoiseParams, denoise
from ampdenoise.derep import dereplicate_fastq
from ampdenoise.error_model import DEFAULT_MAX_QUALITY, ErrorModel, fit_error_rates
from ampdenoise.types import DerepResult


@dataclass
class LearnParams:
    """Error learning parameters.

    Attributes:
        n_bases: Stop reading further samples once this many bases are loaded
        max_iterations: Upper bound on denoise/refit rounds
        tolerance: Converged when no rate changes by more than this
        randomize: Visit samples in a seeded random order instead of file order
        initial: Starting model, 'max' (every transition rate 1.0) or 'phred'
        max_quality: Lowest maximum quality the model covers
        monotonic_tolerance: Relative increase in a substitution rate with
            quality that is tolerated before it is flagged
    """
    n_bases: float = 1e8
    max_iterations: int = 10
    tolerance: float = 1e-6
    randomize: bool = False
    initial: str = "max"
    max_quality: int = DEFAULT_MAX_QUALITY
    monotonic_tolerance: float = 0.0

    def __post_init__(self):
        if self.initial not in ("max", "phred"):
            raise ValueError(f"initial must be 'max' or 'phred', got {self.initial!r}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {self.max_iterations}")


class LearnResult(NamedTuple):
    """Learned error model and how it was reached."""
    model: ErrorModel
    converged: bool
    iterations: int
    history: List[float]  # Max rate change per iteration
    n_reads: int
    n_bases: int
    violations: List[Tuple[str, int]]  # Non-monotonic (transition, quality)


def _denoise_all(dereps: List[DerepResult], model: ErrorModel, params: DenoiseParams,
                 threads: int, desc: str) -> np.ndarray:
    """Denoise every sample with one model and sum the transition counts."""
    def run(derep):
        return denoise(derep, model, params).transitions

    if threads > 1 and len(dereps) > 1:
        with ThreadPoolExecutor(max_workers=threads) as executor:
            results = list(tqdm(executor.map(run, dereps), total=len(dereps), desc=desc, leave=False))
    else:
        results = [run(d) for d in tqdm(dereps, desc=desc, leave=False)]
    return np.sum(results, axis=0)


def learn_errors(paths: List[str], denoise_params: Optional[DenoiseParams] = None,
                 params: Optional[LearnParams] = None, seed: Optional[int] = None,
                 threads: int = 1, label: str = "") -> LearnResult:
    """Learn an error model from filtered reads of one orientation.

    Alternates between denoising all loaded samples under the current model
    and refitting the model to the observed transitions, until the largest rate
    change falls below the tolerance or the iteration bound is reached. The
    best estimate is returned even without convergence.

    Args:
        paths: Filtered FASTQ files, one per sample
        denoise_params: Parameters for the inner denoising runs
        params: Learning parameters
        seed: Seed for the sample order when params.randomize is set
        threads: Worker threads for denoising samples within an iteration
        label: Name used in log messages (e.g. 'forward')

    Returns:
        LearnResult with the fitted ErrorModel
    """
    denoise_params = denoise_params or DenoiseParams()
    params = params or LearnParams()
    if not paths:
        raise ValueError("Cannot learn errors without any input files")

    order = list(range(len(paths)))
    if params.randomize:
        random.Random(seed).shuffle(order)

    dereps = []
    n_reads = 0
    n_bases = 0
    for i in order:
        if n_bases >= params.n_bases:
            break
        derep = dereplicate_fastq(paths[i])
        dereps.append(derep)
        n_reads += derep.n_reads
        n_bases += sum(len(r.sequence) * r.abundance for r in derep.records)

    logging.info(f"Learning {label} error rates from {n_bases} bases in {n_reads} reads "
                 f"of {len(dereps)} samples")

    max_quality = params.max_quality
    for derep in dereps:
        for record in derep.records:
            if len(record.quality):
                max_quality = max(max_quality, int(math.ceil(record.quality.max())))

    if params.initial == "phred":
        model = ErrorModel.from_phred(max_quality)
    else:
        model = ErrorModel.uniform(1.0, max_quality)

    history = []
    converged = False
    iteration = 0
    for iteration in range(1, params.max_iterations + 1):
        transitions = _denoise_all(dereps, model, denoise_params, threads,
                                   desc=f"Error learning {label} round {iteration}")
        updated = fit_error_rates(transitions)
        change = updated.max_difference(model)
        history.append(change)
        model = updated
        logging.debug(f"{label} error learning round {iteration}: max rate change {change:.3g}")
        if change < params.tolerance:
            converged = True
            break

    if converged:
        logging.info(f"{label} error model converged after {iteration} rounds")
    else:
        logging.warning(f"{label} error model did not converge within {params.max_iterations} rounds "
                        f"(last change {history[-1]:.3g}); using best estimate with low confidence")

    violations = model.monotonic_violations(params.monotonic_tolerance)
    if violations:
        shown = ", ".join(f"{t}@Q{q}" for t, q in violations[:10])
        more = f" and {len(violations) - 10} more" if len(violations) > 10 else ""
        logging.warning(f"{label} error rates increase with quality at {shown}{more}")

    return LearnResult(model=model, converged=converged, iterations=iteration, history=history,
                       n_reads=n_reads, n_bases=n_bases, violations=violations)
