"""Dereplication of reads into unique sequences with abundances."""

from typing import Dict, List

import numpy as np
from Bio.SeqRecord import SeqRecord

from ampdenoise.fastq import read_fastq
from ampdenoise.types import DerepRecord, DerepResult


def dereplicate(records: List[SeqRecord]) -> DerepResult:
    """Collapse identical reads into unique sequences.

    Quality vectors are averaged position-wise over all reads sharing a
    sequence. Unique sequences are sorted by abundance (descending), ties keep
    the order in which the sequences were first seen.

    Args:
        records: Reads of one sample and one orientation

    Returns:
        DerepResult with the sorted unique records and the read -> unique map
    """
    index_of: Dict[str, int] = {}
    sequences: List[str] = []
    counts: List[int] = []
    quality_sums: List[np.ndarray] = []
    first_seen: List[int] = []
    raw_map = np.empty(len(records), dtype=np.int64)

    for read_idx, record in enumerate(records):
        seq = str(record.seq).upper()
        quals = np.asarray(record.letter_annotations["phred_quality"], dtype=float)
        idx = index_of.get(seq)
        if idx is None:
            idx = len(sequences)
            index_of[seq] = idx
            sequences.append(seq)
            counts.append(0)
            quality_sums.append(np.zeros(len(seq), dtype=float))
            first_seen.append(read_idx)
        counts[idx] += 1
        quality_sums[idx] += quals
        raw_map[read_idx] = idx

    # Stable sort on abundance keeps first-seen order among ties
    order = sorted(range(len(sequences)), key=lambda i: -counts[i])
    rank = np.empty(len(sequences), dtype=np.int64)
    derep_records = []
    for new_idx, old_idx in enumerate(order):
        rank[old_idx] = new_idx
        derep_records.append(DerepRecord(
            sequence=sequences[old_idx],
            abundance=counts[old_idx],
            quality=quality_sums[old_idx] / counts[old_idx],
            first_index=first_seen[old_idx],
        ))

    read_map = rank[raw_map] if len(records) else np.empty(0, dtype=np.int64)
    return DerepResult(records=derep_records, read_map=read_map)


def dereplicate_fastq(path: str) -> DerepResult:
    """Dereplicate a (possibly gzipped) FASTQ file."""
    return dereplicate(read_fastq(path))
