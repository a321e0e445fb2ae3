"""Quality-dependent substitution error model.

The model is a 16 x Q matrix: row ``4*i + j`` holds the probability that a
true base ``NUCLEOTIDES[i]`` is read as ``NUCLEOTIDES[j]``, column ``q`` the
phred quality score of the read base. Models are immutable once built; the
learner replaces the whole model on every iteration instead of updating it.
"""

import csv
import logging
import math
from typing import List, Tuple

import numpy as np

from ampdenoise.types import NUCLEOTIDES


TRANSITIONS = [f"{a}2{b}" for a in NUCLEOTIDES for b in NUCLEOTIDES]
SUBSTITUTION_ROWS = [4 * i + j for i in range(4) for j in range(4) if i != j]

MIN_ERROR_RATE = 1e-7
MAX_ERROR_RATE = 0.25
DEFAULT_MAX_QUALITY = 40


class ErrorModel:
    """Read-only substitution probabilities indexed by (transition, quality)."""

    def __init__(self, rates):
        rates = np.array(rates, dtype=float)
        if rates.ndim != 2 or rates.shape[0] != 16 or rates.shape[1] < 1:
            raise ValueError(f"Error rates must be a 16 x Q matrix, got shape {rates.shape}")
        if np.any(np.isnan(rates)) or np.any(rates < 0) or np.any(rates > 1):
            raise ValueError("Error rates must be probabilities in [0, 1]")
        rates.flags.writeable = False
        self._rates = rates

        with np.errstate(divide="ignore"):
            log_rates = np.log(rates)
        log_rates.flags.writeable = False
        self._log_rates = log_rates

    @property
    def rates(self) -> np.ndarray:
        return self._rates

    @property
    def log_rates(self) -> np.ndarray:
        return self._log_rates

    @property
    def max_quality(self) -> int:
        return self._rates.shape[1] - 1

    @property
    def n_qualities(self) -> int:
        return self._rates.shape[1]

    def rate(self, from_base: str, to_base: str, quality: int) -> float:
        row = 4 * NUCLEOTIDES.index(from_base) + NUCLEOTIDES.index(to_base)
        return float(self._rates[row, min(max(int(quality), 0), self.max_quality)])

    @classmethod
    def uniform(cls, value: float = 1.0, max_quality: int = DEFAULT_MAX_QUALITY) -> 'ErrorModel':
        """Every transition at every quality gets the same rate.

        With the default of 1.0 every read is a plausible error copy of every
        other, which is the maximally conservative starting point for learning.
        """
        return cls(np.full((16, max_quality + 1), float(value)))

    @classmethod
    def from_phred(cls, max_quality: int = DEFAULT_MAX_QUALITY) -> 'ErrorModel':
        """Rates implied by the nominal meaning of phred scores."""
        q = np.arange(max_quality + 1, dtype=float)
        p_error = np.power(10.0, -q / 10.0)
        rates = np.empty((16, max_quality + 1))
        for i in range(4):
            for j in range(4):
                rates[4 * i + j] = 1.0 - p_error if i == j else p_error / 3.0
        return cls(rates)

    def extended(self, max_quality: int) -> 'ErrorModel':
        """Copy of this model covering qualities up to max_quality.

        New columns repeat the last existing column.
        """
        if max_quality <= self.max_quality:
            return self
        extra = np.repeat(self._rates[:, -1:], max_quality - self.max_quality, axis=1)
        return ErrorModel(np.hstack([self._rates, extra]))

    def max_difference(self, other: 'ErrorModel') -> float:
        """Largest absolute rate difference between two models."""
        q = max(self.max_quality, other.max_quality)
        a = self.extended(q).rates
        b = other.extended(q).rates
        return float(np.max(np.abs(a - b)))

    def monotonic_violations(self, tolerance: float = 0.0) -> List[Tuple[str, int]]:
        """Substitution rates that increase with quality score.

        Returns:
            (transition, quality) for every quality whose rate exceeds the rate
            at the previous quality by more than the relative tolerance
        """
        violations = []
        for row in SUBSTITUTION_ROWS:
            rates = self._rates[row]
            for q in range(1, len(rates)):
                if rates[q] > rates[q - 1] * (1.0 + tolerance) + 1e-12:
                    violations.append((TRANSITIONS[row], q))
        return violations

    def to_tsv(self, path: str) -> None:
        with open(path, 'w', newline='') as f:
            writer = csv.writer(f, delimiter='\t')
            writer.writerow(["transition"] + [str(q) for q in range(self.n_qualities)])
            for name, row in zip(TRANSITIONS, self._rates):
                writer.writerow([name] + [f"{v:.6g}" for v in row])

    @classmethod
    def from_tsv(cls, path: str) -> 'ErrorModel':
        rows = {}
        with open(path, newline='') as f:
            reader = csv.reader(f, delimiter='\t')
            next(reader)
            for line in reader:
                rows[line[0]] = [float(v) for v in line[1:]]
        missing = [t for t in TRANSITIONS if t not in rows]
        if missing:
            raise ValueError(f"Error model file {path} is missing transitions: {', '.join(missing)}")
        return cls([rows[t] for t in TRANSITIONS])

    def __repr__(self) -> str:
        return f"ErrorModel(max_quality={self.max_quality})"


def _loess(x: np.ndarray, y: np.ndarray, weights: np.ndarray, x_eval: np.ndarray,
           span: float = 0.75, degree: int = 2) -> np.ndarray:
    """Weighted local polynomial regression with tricube kernel."""
    n = len(x)
    degree = min(degree, n - 1)
    if degree <= 0:
        value = float(np.average(y, weights=weights)) if np.sum(weights) > 0 else float(np.mean(y))
        return np.full(len(x_eval), value)

    k = min(n, max(degree + 1, int(math.ceil(span * n))))
    fitted = np.empty(len(x_eval))
    for i, x0 in enumerate(x_eval):
        dist = np.abs(x - x0)
        h = np.sort(dist)[k - 1]
        h = h * 1.000001 if h > 0 else 1.0
        kernel = np.clip(1.0 - (dist / h) ** 3, 0.0, None) ** 3
        w = kernel * weights
        local_degree = min(degree, int(np.count_nonzero(w)) - 1)
        if local_degree <= 0:
            fitted[i] = float(np.average(y, weights=w)) if np.sum(w) > 0 else float(np.mean(y))
            continue
        design = np.vander(x - x0, local_degree + 1, increasing=True)
        sqrt_w = np.sqrt(w)
        coef, _, _, _ = np.linalg.lstsq(design * sqrt_w[:, None], y * sqrt_w, rcond=None)
        fitted[i] = coef[0]
    return fitted


def fit_error_rates(transitions: np.ndarray, span: float = 0.75) -> ErrorModel:
    """Fit an error model to observed transition counts.

    For each substitution the empirical rate at each observed quality is
    smoothed across quality scores by LOESS in log10 space, weighted by the
    number of observations. Qualities outside the observed range take the
    nearest fitted value. A nucleotide that was never observed falls back to
    phred-implied rates.

    Args:
        transitions: 16 x Q matrix of (true base -> read base, quality) counts

    Returns:
        ErrorModel with rates clamped to [MIN_ERROR_RATE, MAX_ERROR_RATE]
    """
    trans = np.asarray(transitions, dtype=float)
    if trans.ndim != 2 or trans.shape[0] != 16:
        raise ValueError(f"Transition counts must be a 16 x Q matrix, got shape {trans.shape}")

    n_qual = trans.shape[1]
    qualities = np.arange(n_qual, dtype=float)
    phred = ErrorModel.from_phred(n_qual - 1).rates
    rates = np.zeros((16, n_qual))

    for i in range(4):
        block = slice(4 * i, 4 * i + 4)
        totals = trans[block].sum(axis=0)
        observed = totals > 0
        if not observed.any():
            logging.debug(f"No observations of {NUCLEOTIDES[i]}, using phred-implied rates")
            rates[block] = phred[block]
            continue

        q_obs = qualities[observed]
        lo, hi = int(q_obs.min()), int(q_obs.max())
        for j in range(4):
            if i == j:
                continue
            row = 4 * i + j
            # Pseudocount keeps unobserved substitutions finite in log space
            log_rate = np.log10((trans[row, observed] + 1.0) / totals[observed])
            fit = _loess(q_obs, log_rate, totals[observed], qualities[lo:hi + 1], span=span)
            row_rates = np.empty(n_qual)
            row_rates[lo:hi + 1] = np.power(10.0, fit)
            row_rates[:lo] = row_rates[lo]
            row_rates[hi + 1:] = row_rates[hi]
            rates[row] = np.clip(row_rates, MIN_ERROR_RATE, MAX_ERROR_RATE)

        subs = [4 * i + j for j in range(4) if j != i]
        rates[4 * i + i] = 1.0 - rates[subs].sum(axis=0)

    return ErrorModel(rates)
