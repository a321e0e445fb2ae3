"""Merging of denoised forward and reverse variants into full amplicons."""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

import numpy as np
from Bio.Seq import reverse_complement

from ampdenoise.types import DenoiseResult, DerepResult, MergedSequence


CONCAT_SPACER = "N" * 10


@dataclass
class MergeParams:
    """Pair merging parameters.

    Attributes:
        min_overlap: Minimum length of the forward/reverse overlap
        max_mismatch: Maximum mismatches allowed in the overlap
        max_mismatch_rate: Optional maximum mismatches per overlap base
        trim_overhang: Drop sequence extending past the other read's start
        just_concatenate: Join forward + 10 N + reverse-complement without overlap
    """
    min_overlap: int = 12
    max_mismatch: int = 0
    max_mismatch_rate: Optional[float] = None
    trim_overhang: bool = False
    just_concatenate: bool = False

    def __post_init__(self):
        if self.min_overlap < 1:
            raise ValueError(f"min_overlap must be positive, got {self.min_overlap}")
        if self.max_mismatch < 0:
            raise ValueError(f"max_mismatch must be non-negative, got {self.max_mismatch}")
        if self.max_mismatch_rate is not None and not 0 <= self.max_mismatch_rate <= 1:
            raise ValueError(f"max_mismatch_rate must be in [0, 1], got {self.max_mismatch_rate}")


class MergeOutcome(NamedTuple):
    """Result of overlapping one forward sequence with one reverse sequence."""
    sequence: Optional[str]
    n_match: int
    n_mismatch: int
    overlap: int
    accepted: bool
    reject_reason: Optional[str] = None


class MergeResult(NamedTuple):
    """Merged pairs of one sample."""
    merged: List[MergedSequence]  # Accepted, most abundant first
    rejected: List[MergedSequence]

    @property
    def merged_reads(self) -> int:
        return sum(m.abundance for m in self.merged)

    @property
    def rejected_reads(self) -> int:
        return sum(m.abundance for m in self.rejected)


def merge_sequences(forward: str, reverse: str, params: Optional[MergeParams] = None) -> MergeOutcome:
    """Overlap a forward sequence with the reverse-complement of a reverse sequence.

    Every gapless offset with at least ``min_overlap`` overlapping bases is
    scored as matches minus mismatches. The best offset must be unique;
    otherwise the merge is rejected as ambiguous. Mismatching overlap
    positions take the forward base.
    """
    params = params or MergeParams()
    rc = reverse_complement(reverse)

    if params.just_concatenate:
        return MergeOutcome(sequence=forward + CONCAT_SPACER + rc, n_match=0, n_mismatch=0,
                            overlap=0, accepted=True)

    f = np.frombuffer(forward.encode('ascii'), dtype=np.uint8)
    r = np.frombuffer(rc.encode('ascii'), dtype=np.uint8)
    lf, lr = len(f), len(r)

    best = None
    best_score = None
    n_best = 0
    # Offset of the reverse-complement's first base in forward coordinates
    for offset in range(-(lr - params.min_overlap), lf - params.min_overlap + 1):
        f_start = max(0, offset)
        f_end = min(lf, offset + lr)
        overlap = f_end - f_start
        if overlap < params.min_overlap:
            continue
        matches = int(np.count_nonzero(f[f_start:f_end] == r[f_start - offset:f_end - offset]))
        score = 2 * matches - overlap
        if best_score is None or score > best_score:
            best, best_score, n_best = (offset, matches, overlap), score, 1
        elif score == best_score:
            n_best += 1

    if best is None:
        return MergeOutcome(sequence=None, n_match=0, n_mismatch=0, overlap=0,
                            accepted=False, reject_reason="no overlap")

    offset, matches, overlap = best
    mismatches = overlap - matches
    if n_best > 1:
        return MergeOutcome(sequence=None, n_match=matches, n_mismatch=mismatches, overlap=overlap,
                            accepted=False, reject_reason="ambiguous overlap")
    if mismatches > params.max_mismatch or (
            params.max_mismatch_rate is not None and mismatches / overlap > params.max_mismatch_rate):
        return MergeOutcome(sequence=None, n_match=matches, n_mismatch=mismatches, overlap=overlap,
                            accepted=False, reject_reason="too many mismatches")

    f_start = max(0, offset)
    f_end = min(lf, offset + lr)
    head = forward[:f_start]
    if offset < 0 and not params.trim_overhang:
        head = rc[:-offset]
    tail = rc[f_end - offset:]
    if offset + lr < lf and not params.trim_overhang:
        tail = forward[f_end:]
    sequence = head + forward[f_start:f_end] + tail

    return MergeOutcome(sequence=sequence, n_match=matches, n_mismatch=mismatches,
                        overlap=overlap, accepted=True)


def merge_pairs(forward: DenoiseResult, forward_derep: DerepResult,
                reverse: DenoiseResult, reverse_derep: DerepResult,
                params: Optional[MergeParams] = None) -> MergeResult:
    """Merge the denoised variants of one sample.

    Each read pair is routed through the dereplication maps to the forward and
    reverse variants it was assigned to. Every distinct (forward, reverse)
    combination is merged once and carries the number of read pairs that
    support it. Pairs with an uncorrected mate are not counted.

    Raises:
        ValueError: If the forward and reverse reads are not paired one to one
    """
    params = params or MergeParams()
    if forward_derep.n_reads != reverse_derep.n_reads:
        raise ValueError(f"Forward ({forward_derep.n_reads}) and reverse ({reverse_derep.n_reads}) "
                         "read counts differ; pairs are out of register")

    f_variant = forward.assignment[forward_derep.read_map]
    r_variant = reverse.assignment[reverse_derep.read_map]
    both = (f_variant >= 0) & (r_variant >= 0)
    pair_counts = Counter(zip(f_variant[both].tolist(), r_variant[both].tolist()))

    merged = []
    rejected = []
    for f_idx, r_idx in sorted(pair_counts):
        outcome = merge_sequences(forward.variants[f_idx].sequence,
                                  reverse.variants[r_idx].sequence, params)
        entry = MergedSequence(
            sequence=outcome.sequence or "",
            abundance=pair_counts[(f_idx, r_idx)],
            forward_index=f_idx,
            reverse_index=r_idx,
            n_match=outcome.n_match,
            n_mismatch=outcome.n_mismatch,
            overlap=outcome.overlap,
            accepted=outcome.accepted,
            reject_reason=outcome.reject_reason,
        )
        (merged if outcome.accepted else rejected).append(entry)

    merged.sort(key=lambda m: (-m.abundance, m.forward_index, m.reverse_index))
    if rejected:
        logging.debug(f"Rejected {len(rejected)} of {len(pair_counts)} variant pairings "
                      f"({sum(m.abundance for m in rejected)} reads)")
    return MergeResult(merged=merged, rejected=rejected)
