"""Divisive partitioning of dereplicated reads into sequence variants.

Unique sequences live in an arena indexed by integer (their rank in the
dereplicated, abundance-sorted record list). Partition centers are arena
indices. For every center we compute, once, the log-probability that each
unique sequence is an error-laden copy of that center; partition membership,
abundance p-values and the choice of the next center are all derived from
that fixed table of scores, so the whole procedure is deterministic.

Outline:
    1. All reads start in one partition centered on the most abundant sequence
    2. Reads are reassigned to the center most likely to have produced them
    3. Each non-center sequence gets a Poisson abundance p-value: how surprising
       its abundance is if it were only sequencing errors of its center
    4. The most significant sequence is promoted to a new center if its
       Bonferroni-corrected p-value is below omega_a; repeat from 2
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import edlib
import numpy as np
from scipy.special import gammaln
from scipy.stats import poisson

from ampdenoise.error_model import ErrorModel
from ampdenoise.types import DenoiseResult, DerepResult, NUCLEOTIDES, SequenceVariant


# Below this log expected count the conditional Poisson tail is replaced by its
# leading term, mu^(a-1) / a!, which stays accurate where logsf underflows.
SMALL_LOG_MU = -20.0

_CODES = np.full(256, 255, dtype=np.uint8)
for _i, _base in enumerate(NUCLEOTIDES):
    _CODES[ord(_base)] = _i
    _CODES[ord(_base.lower())] = _i


@dataclass
class DenoiseParams:
    """Denoising parameters.

    Attributes:
        omega_a: Significance threshold for promoting a sequence to a new partition
        omega_c: Sequences whose p-value against their center is below this
            are left uncorrected (not counted toward any variant)
        kmer_size: k-mer length for the pre-alignment distance screen
        kdist_cutoff: Sequences further than this k-mer distance from a center
            cannot be its error copies
        gap_rate: Per-column probability of an indel, used when lengths differ
        max_shuffle: Maximum reassignment rounds per partition update
        max_clusters: Stop after this many partitions (0 = no limit)
        min_fold: Minimum observed/expected abundance ratio for promotion
        min_hamming: Minimum distance from its center for promotion
    """
    omega_a: float = 1e-40
    omega_c: float = 1e-40
    kmer_size: int = 5
    kdist_cutoff: float = 0.42
    gap_rate: float = 1e-4
    max_shuffle: int = 10
    max_clusters: int = 0
    min_fold: float = 1.0
    min_hamming: int = 1

    def __post_init__(self):
        if not 0 < self.omega_a <= 1:
            raise ValueError(f"omega_a must be in (0, 1], got {self.omega_a}")
        if not 0 <= self.omega_c <= 1:
            raise ValueError(f"omega_c must be in [0, 1], got {self.omega_c}")
        if not 0 < self.gap_rate < 1:
            raise ValueError(f"gap_rate must be in (0, 1), got {self.gap_rate}")
        if self.kmer_size < 1:
            raise ValueError(f"kmer_size must be positive, got {self.kmer_size}")


def encode_sequence(sequence: str) -> np.ndarray:
    """Map ACGT to 0-3; any other symbol becomes 255."""
    return _CODES[np.frombuffer(sequence.encode('ascii'), dtype=np.uint8)]


def kmer_counts(codes: np.ndarray, k: int) -> np.ndarray:
    """Count the 4**k k-mers of an encoded sequence, skipping ambiguous ones."""
    n = len(codes) - k + 1
    if n <= 0:
        return np.zeros(4 ** k, dtype=np.int64)
    valid = codes < 4
    clean = np.where(valid, codes, 0).astype(np.int64)
    index = np.zeros(n, dtype=np.int64)
    ok = np.ones(n, dtype=bool)
    for j in range(k):
        index = index * 4 + clean[j:j + n]
        ok &= valid[j:j + n]
    return np.bincount(index[ok], minlength=4 ** k)


def abundance_log_pvalues(abundance: np.ndarray, log_mu: np.ndarray) -> np.ndarray:
    """Log of P(X >= a | X >= 1) for X ~ Poisson(mu).

    Conditioning on X >= 1 reflects that a sequence is only seen at all
    because it was sampled at least once; a sequence seen once is therefore
    never significant.
    """
    abundance = np.asarray(abundance, dtype=np.int64)
    log_mu = np.asarray(log_mu, dtype=float)
    logp = np.zeros(len(abundance))

    multi = abundance > 1
    small = multi & (log_mu < SMALL_LOG_MU)
    if small.any():
        a = abundance[small]
        logp[small] = (a - 1) * log_mu[small] - gammaln(a + 1)

    large = multi & ~small
    if large.any():
        a = abundance[large]
        mu = np.exp(log_mu[large])
        logp[large] = poisson.logsf(a - 1, mu) - poisson.logsf(0, mu)

    return np.minimum(logp, 0.0)


def _aligned_columns(center: str, sequence: str) -> List[Tuple[int, int, int]]:
    """Global alignment of a sequence against a center.

    Returns:
        (center_code, sequence_code, sequence_position) per alignment column;
        gaps are -1
    """
    result = edlib.align(center, sequence, mode="NW", task="path")
    nice = edlib.getNiceAlignment(result, center, sequence)
    columns = []
    seq_pos = 0
    for c_char, s_char in zip(nice['query_aligned'], nice['target_aligned']):
        c_code = -1 if c_char == '-' else int(_CODES[ord(c_char)])
        if s_char == '-':
            columns.append((c_code, -1, -1))
        else:
            columns.append((c_code, int(_CODES[ord(s_char)]), seq_pos))
            seq_pos += 1
    return columns


class _RecordArena:
    """Encoded unique sequences, grouped by length for vectorised scoring."""

    def __init__(self, derep: DerepResult, max_quality: int, kmer_size: int):
        records = derep.records
        self.n = len(records)
        self.sequences = [r.sequence for r in records]
        self.abundance = np.array([r.abundance for r in records], dtype=np.int64)
        self.lengths = np.array([len(r.sequence) for r in records], dtype=np.int64)
        self.codes = [encode_sequence(r.sequence) for r in records]
        self.quals = [np.clip(np.rint(r.quality), 0, max_quality).astype(np.int64) for r in records]
        self.kmer_size = kmer_size
        self.kmers = np.vstack([
            np.minimum(kmer_counts(c, kmer_size), 255).astype(np.uint8) for c in self.codes
        ])

        self.groups: Dict[int, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}
        for length in np.unique(self.lengths):
            idx = np.nonzero(self.lengths == length)[0]
            self.groups[int(length)] = (
                idx,
                np.vstack([self.codes[i] for i in idx]),
                np.vstack([self.quals[i] for i in idx]),
            )
        self._alignments: Dict[Tuple[int, int], List[Tuple[int, int, int]]] = {}

    def kmer_distance(self, center: int, chunk_size: int = 4096) -> np.ndarray:
        center_kmers = self.kmers[center].astype(np.int32)
        shared = np.empty(self.n, dtype=np.int64)
        for start in range(0, self.n, chunk_size):
            block = self.kmers[start:start + chunk_size].astype(np.int32)
            shared[start:start + chunk_size] = np.minimum(block, center_kmers[None, :]).sum(axis=1)
        denom = np.minimum(self.lengths, self.lengths[center]) - self.kmer_size + 1
        dist = np.zeros(self.n)
        ok = denom > 0
        dist[ok] = 1.0 - shared[ok] / denom[ok]
        return dist

    def alignment(self, center: int, index: int) -> List[Tuple[int, int, int]]:
        key = (center, index)
        if key not in self._alignments:
            self._alignments[key] = _aligned_columns(self.sequences[center], self.sequences[index])
        return self._alignments[key]

    def log_lambda(self, center: int, log_rates: np.ndarray, params: DenoiseParams) -> np.ndarray:
        """Log-probability that each unique sequence is an error copy of center."""
        out = np.full(self.n, -np.inf)
        candidates = self.kmer_distance(center) <= params.kdist_cutoff
        candidates[center] = True

        length = int(self.lengths[center])
        idx, codes, quals = self.groups[length]
        sel = candidates[idx]
        if sel.any():
            center_codes = self.codes[center].astype(np.int64)[None, :]
            group_codes = codes[sel].astype(np.int64)
            valid = (group_codes < 4) & (center_codes < 4)
            trans = np.where(valid, center_codes * 4 + group_codes, 0)
            scores = np.where(valid, log_rates[trans, quals[sel]], 0.0)
            out[idx[sel]] = scores.sum(axis=1)

        log_gap = np.log(params.gap_rate)
        for index in np.nonzero(candidates & (self.lengths != length))[0]:
            total = 0.0
            for c_code, s_code, s_pos in self.alignment(center, int(index)):
                if c_code < 0 or s_code < 0:
                    total += log_gap
                elif c_code < 4 and s_code < 4:
                    total += log_rates[c_code * 4 + s_code, self.quals[index][s_pos]]
            out[index] = total
        return out

    def distance(self, center: int, index: int) -> int:
        """Mismatches plus indels between a sequence and a center."""
        if self.lengths[center] == self.lengths[index]:
            return int(np.count_nonzero(self.codes[center] != self.codes[index]))
        return sum(1 for c, s, _ in self.alignment(center, index) if c != s)

    def count_transitions(self, center: int, index: int, weight: int, trans: np.ndarray) -> None:
        if self.lengths[center] == self.lengths[index]:
            c_codes = self.codes[center].astype(np.int64)
            s_codes = self.codes[index].astype(np.int64)
            valid = (c_codes < 4) & (s_codes < 4)
            np.add.at(trans, (c_codes[valid] * 4 + s_codes[valid], self.quals[index][valid]), weight)
            return
        for c_code, s_code, s_pos in self.alignment(center, index):
            if 0 <= c_code < 4 and 0 <= s_code < 4:
                trans[c_code * 4 + s_code, self.quals[index][s_pos]] += weight


def _reassign(log_lambda: np.ndarray, centers: List[int], abundance: np.ndarray,
              assignment: np.ndarray, max_shuffle: int) -> np.ndarray:
    """Move each sequence to the center expected to produce the most copies of it."""
    k = len(centers)
    center_idx = np.array(centers, dtype=np.int64)
    for _ in range(max(1, max_shuffle)):
        reads = np.bincount(assignment, weights=abundance, minlength=k)
        with np.errstate(divide="ignore"):
            score = log_lambda + np.log(reads)[None, :]
        # argmax returns the first maximum, so ties go to the earliest center
        updated = np.argmax(score, axis=1)
        updated[center_idx] = np.arange(k)
        if np.array_equal(updated, assignment):
            break
        assignment = updated
    return assignment


def denoise(derep: DerepResult, model: ErrorModel,
            params: Optional[DenoiseParams] = None) -> DenoiseResult:
    """Infer the sequence variants of one sample and orientation.

    Args:
        derep: Dereplicated reads, most abundant first
        model: Error model for this orientation
        params: Denoising parameters (defaults if None)

    Returns:
        DenoiseResult with one SequenceVariant per final partition, the
        record -> variant assignment, and transition counts for error learning
    """
    params = params or DenoiseParams()
    n = len(derep.records)
    if n == 0:
        return DenoiseResult(variants=[], assignment=np.empty(0, dtype=np.int64),
                             transitions=np.zeros((16, model.n_qualities)))

    arena = _RecordArena(derep, model.max_quality, params.kmer_size)
    log_rates = model.log_rates
    abundance = arena.abundance
    log_n = np.log(n)
    log_omega_a = np.log(params.omega_a)

    centers = [0]
    births: List[Tuple[Optional[float], Optional[float], Optional[int]]] = [(None, None, None)]
    lambda_columns = [arena.log_lambda(0, log_rates, params)]
    assignment = np.zeros(n, dtype=np.int64)
    is_center = np.zeros(n, dtype=bool)
    is_center[0] = True
    rows = np.arange(n)

    while True:
        log_lambda = np.column_stack(lambda_columns)
        assignment = _reassign(log_lambda, centers, abundance, assignment, params.max_shuffle)
        reads = np.bincount(assignment, weights=abundance, minlength=len(centers))
        log_mu = log_lambda[rows, assignment] + np.log(reads[assignment])
        logp = abundance_log_pvalues(abundance, log_mu)

        if params.max_clusters and len(centers) >= params.max_clusters:
            logging.debug(f"Reached max_clusters={params.max_clusters}")
            break

        eligible = ~is_center & (logp + log_n < log_omega_a)
        if params.min_fold > 1:
            with np.errstate(over="ignore"):
                fold = abundance / np.exp(log_mu)
            eligible &= fold >= params.min_fold
        if not eligible.any():
            break

        # Most significant first, then most abundant, then earliest
        cand_idx = np.nonzero(eligible)[0]
        order = np.lexsort((cand_idx, -abundance[cand_idx], logp[cand_idx]))
        candidate = None
        for pos in order:
            idx = int(cand_idx[pos])
            hamming = arena.distance(centers[assignment[idx]], idx)
            if hamming >= params.min_hamming:
                candidate = idx
                break
        if candidate is None:
            break

        expected = float(np.exp(log_mu[candidate]))
        births.append((
            float(np.exp(logp[candidate])),
            float(abundance[candidate] / expected) if expected > 0 else float('inf'),
            hamming,
        ))
        centers.append(candidate)
        is_center[candidate] = True
        lambda_columns.append(arena.log_lambda(candidate, log_rates, params))
        assignment[candidate] = len(centers) - 1

    assigned_lambda = log_lambda[rows, assignment]
    with np.errstate(divide="ignore"):
        log_omega_c = np.log(params.omega_c)
    uncorrected = ~is_center & (np.isneginf(assigned_lambda) | (logp < log_omega_c))
    final_assignment = np.where(uncorrected, -1, assignment)

    transitions = np.zeros((16, model.n_qualities))
    variants = []
    for k, center in enumerate(centers):
        members = np.nonzero(final_assignment == k)[0]
        n1 = 0
        for idx in members:
            idx = int(idx)
            arena.count_transitions(center, idx, int(abundance[idx]), transitions)
            if idx != center and arena.distance(center, idx) == 1:
                n1 += int(abundance[idx])
        birth_pval, birth_fold, birth_hamming = births[k]
        variants.append(SequenceVariant(
            sequence=arena.sequences[center],
            abundance=int(abundance[members].sum()),
            n0=int(abundance[center]),
            n1=n1,
            n_unique=len(members),
            birth_pval=birth_pval,
            birth_fold=birth_fold,
            birth_hamming=birth_hamming,
        ))

    n_uncorrected = int(abundance[uncorrected].sum())
    logging.debug(f"Denoised {n} unique sequences into {len(variants)} variants "
                  f"({n_uncorrected} reads uncorrected)")
    return DenoiseResult(variants=variants, assignment=final_assignment, transitions=transitions)
