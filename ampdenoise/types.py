"""Shared data types for the ampdenoise pipeline.

Sequence identity is always the sequence string itself; none of these types
carries an opaque per-run identifier that would make results from separately
processed samples incomparable.
"""

from typing import List, NamedTuple, Optional

import numpy as np


NUCLEOTIDES = "ACGT"


class SamplePair(NamedTuple):
    """A sample and its forward/reverse read files."""
    name: str
    forward_path: str
    reverse_path: str


class DerepRecord(NamedTuple):
    """A unique sequence observed within one sample and orientation."""
    sequence: str
    abundance: int
    quality: np.ndarray  # Mean phred quality per position over all copies
    first_index: int  # Index of the first read carrying this sequence


class DerepResult(NamedTuple):
    """Dereplicated reads of one sample and orientation."""
    records: List[DerepRecord]  # Sorted by abundance desc, ties by first index
    read_map: np.ndarray  # Read index -> index into records

    @property
    def n_reads(self) -> int:
        return int(len(self.read_map))


class SequenceVariant(NamedTuple):
    """An inferred true sequence within one sample and orientation."""
    sequence: str
    abundance: int
    n0: int  # Reads identical to the partition center
    n1: int  # Reads one substitution away from the center
    n_unique: int  # Unique sequences assigned to this partition
    birth_pval: Optional[float] = None  # None for the initial partition
    birth_fold: Optional[float] = None  # Observed / expected abundance at promotion
    birth_hamming: Optional[int] = None  # Distance to the center it split from


class DenoiseResult(NamedTuple):
    """Output of the denoising engine for one sample and orientation."""
    variants: List[SequenceVariant]
    assignment: np.ndarray  # Record index -> variant index, -1 if uncorrected
    transitions: np.ndarray  # 16 x Q counts of (center base -> read base, quality)

    @property
    def denoised_reads(self) -> int:
        return int(sum(v.abundance for v in self.variants))


class MergedSequence(NamedTuple):
    """Outcome of merging one forward variant with one reverse variant."""
    sequence: str
    abundance: int
    forward_index: int
    reverse_index: int
    n_match: int
    n_mismatch: int
    overlap: int
    accepted: bool
    reject_reason: Optional[str] = None
