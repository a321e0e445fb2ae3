"""Quality filtering and trimming of paired reads.

Both mates of a pair are filtered in lockstep: the pair is kept only if the
forward and the reverse read each pass every criterion, so read i of the
filtered forward file is still the mate of read i of the filtered reverse file.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence, Tuple

import numpy as np
from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from ampdenoise.fastq import open_fastq, read_paired_records
from ampdenoise.types import SamplePair


@dataclass
class FilterParams:
    """Read filtering parameters.

    Tuple-valued attributes hold (forward, reverse) values.

    Attributes:
        trunc_len: Truncate reads to this length, discarding shorter reads (0 = off)
        trim_left: Number of bases removed from the start of each read
        trunc_q: Truncate at the first base with quality <= trunc_q
        max_n: Maximum number of ambiguous bases after truncation
        max_ee: Maximum expected errors after truncation
        min_len: Discard reads shorter than this after trimming
        max_len: Discard reads longer than this after trimming (0 = off)
        min_q: Discard reads containing any quality below this (0 = off)
        match_ids: Require forward and reverse read IDs to agree
    """
    trunc_len: Tuple[int, int] = (0, 0)
    trim_left: Tuple[int, int] = (0, 0)
    trunc_q: int = 2
    max_n: int = 0
    max_ee: Tuple[float, float] = (math.inf, math.inf)
    min_len: int = 20
    max_len: int = 0
    min_q: int = 0
    match_ids: bool = False

    def __post_init__(self):
        self.trunc_len = tuple(self.trunc_len)
        self.trim_left = tuple(self.trim_left)
        self.max_ee = tuple(float(v) for v in self.max_ee)
        for name in ("trunc_len", "trim_left", "max_ee"):
            value = getattr(self, name)
            if len(value) != 2:
                raise ValueError(f"{name} needs a (forward, reverse) pair, got {value}")
            if any(v < 0 for v in value):
                raise ValueError(f"{name} must be non-negative, got {value}")
        if self.max_n < 0:
            raise ValueError(f"max_n must be non-negative, got {self.max_n}")


class FilterStats(NamedTuple):
    """Read counts of one sample before and after filtering."""
    reads_in: int
    reads_out: int


def expected_errors(qualities: Sequence[int]) -> float:
    """Sum of per-base error probabilities implied by phred scores."""
    if len(qualities) == 0:
        return 0.0
    q = np.asarray(qualities, dtype=float)
    return float(np.sum(np.power(10.0, -q / 10.0)))


def filter_read(record: SeqRecord, params: FilterParams, orientation: int) -> Optional[SeqRecord]:
    """Trim one read and decide whether it passes.

    Args:
        record: Read with phred_quality letter annotations
        params: Filtering parameters
        orientation: 0 for forward, 1 for reverse (selects tuple parameters)

    Returns:
        The trimmed read, or None if it fails any criterion
    """
    quals = record.letter_annotations["phred_quality"]
    start = params.trim_left[orientation]
    end = len(record)

    # Quality truncation happens before length truncation
    if params.trunc_q is not None:
        for pos in range(start, end):
            if quals[pos] <= params.trunc_q:
                end = pos
                break

    trunc_len = params.trunc_len[orientation]
    if trunc_len > 0:
        if end - start < trunc_len:
            return None
        end = start + trunc_len

    length = end - start
    if length <= 0 or length < params.min_len:
        return None
    if params.max_len > 0 and length > params.max_len:
        return None

    trimmed = record[start:end]
    seq = str(trimmed.seq).upper()
    n_count = sum(1 for base in seq if base not in "ACGT")
    if n_count > params.max_n:
        return None

    trimmed_quals = trimmed.letter_annotations["phred_quality"]
    if params.min_q > 0 and min(trimmed_quals) < params.min_q:
        return None
    if expected_errors(trimmed_quals) > params.max_ee[orientation]:
        return None

    return trimmed


def filter_sample(pair: SamplePair, out_forward: str, out_reverse: str,
                  params: FilterParams) -> FilterStats:
    """Filter one sample's read pairs into gzipped FASTQ outputs.

    Outputs are removed again if the input turns out to be malformed, so a
    failed sample never leaves a truncated filtered file behind.

    Raises:
        FastqPairError: If the read files are mismatched
    """
    for path in (out_forward, out_reverse):
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    reads_in = 0
    reads_out = 0
    try:
        with open_fastq(out_forward, "w") as fwd_out, open_fastq(out_reverse, "w") as rev_out:
            for fwd, rev in read_paired_records(pair.forward_path, pair.reverse_path,
                                                match_ids=params.match_ids):
                reads_in += 1
                fwd_kept = filter_read(fwd, params, 0)
                if fwd_kept is None:
                    continue
                rev_kept = filter_read(rev, params, 1)
                if rev_kept is None:
                    continue
                SeqIO.write(fwd_kept, fwd_out, "fastq")
                SeqIO.write(rev_kept, rev_out, "fastq")
                reads_out += 1
    except Exception:
        for path in (out_forward, out_reverse):
            if os.path.exists(path):
                os.remove(path)
        raise

    logging.debug(f"{pair.name}: {reads_out}/{reads_in} read pairs passed filtering")
    return FilterStats(reads_in=reads_in, reads_out=reads_out)
