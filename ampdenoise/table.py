"""Samples x sequence-variant count table."""

import csv
import logging
from collections import defaultdict
from typing import Dict, List, Sequence

import numpy as np

from ampdenoise.types import MergedSequence


class FeatureTable:
    """Raw counts with rows = samples and columns = distinct sequences.

    Columns are keyed by the sequence string; ``asv_ids()`` gives stable
    short names derived from the column order for file output only.
    """

    def __init__(self, samples: Sequence[str], sequences: Sequence[str], counts):
        counts = np.asarray(counts, dtype=np.int64).reshape(len(samples), len(sequences))
        if len(set(sequences)) != len(sequences):
            raise ValueError("Feature table sequences must be unique")
        if len(set(samples)) != len(samples):
            raise ValueError("Feature table sample names must be unique")
        if np.any(counts < 0):
            raise ValueError("Feature table counts must be non-negative")
        self.samples = list(samples)
        self.sequences = list(sequences)
        self.counts = counts

    @property
    def shape(self):
        return self.counts.shape

    def sample_totals(self) -> Dict[str, int]:
        return {s: int(t) for s, t in zip(self.samples, self.counts.sum(axis=1))}

    def column_totals(self) -> np.ndarray:
        return self.counts.sum(axis=0)

    def total(self) -> int:
        return int(self.counts.sum())

    def count(self, sample: str, sequence: str) -> int:
        if sequence not in self.sequences:
            return 0
        return int(self.counts[self.samples.index(sample), self.sequences.index(sequence)])

    def select_columns(self, keep) -> 'FeatureTable':
        keep = np.asarray(keep, dtype=bool)
        sequences = [s for s, k in zip(self.sequences, keep) if k]
        return FeatureTable(self.samples, sequences, self.counts[:, keep])

    def asv_ids(self) -> List[str]:
        return [f"ASV{i}" for i in range(1, len(self.sequences) + 1)]

    def to_tsv(self, path: str, use_ids: bool = False) -> None:
        """Write the table with samples as rows.

        Args:
            path: Output file
            use_ids: Label columns ASV1..N instead of the full sequences
        """
        header = self.asv_ids() if use_ids else self.sequences
        with open(path, 'w', newline='') as f:
            writer = csv.writer(f, delimiter='\t')
            writer.writerow(["sample"] + header)
            for sample, row in zip(self.samples, self.counts):
                writer.writerow([sample] + [str(int(v)) for v in row])

    @classmethod
    def from_tsv(cls, path: str) -> 'FeatureTable':
        with open(path, newline='') as f:
            reader = csv.reader(f, delimiter='\t')
            header = next(reader)
            samples = []
            rows = []
            for line in reader:
                samples.append(line[0])
                rows.append([int(v) for v in line[1:]])
        return cls(samples, header[1:], np.array(rows, dtype=np.int64).reshape(len(samples), len(header) - 1))

    def write_fasta(self, path: str) -> None:
        """Write column sequences as FASTA with ASV ids and total abundance."""
        totals = self.column_totals()
        with open(path, 'w') as f:
            for asv_id, seq, total in zip(self.asv_ids(), self.sequences, totals):
                f.write(f">{asv_id} size={int(total)}\n")
                f.write(seq + "\n")

    def __eq__(self, other) -> bool:
        if not isinstance(other, FeatureTable):
            return NotImplemented
        return (self.samples == other.samples and self.sequences == other.sequences
                and np.array_equal(self.counts, other.counts))

    def __repr__(self) -> str:
        return f"FeatureTable({len(self.samples)} samples x {len(self.sequences)} sequences)"


def make_sequence_table(merged_by_sample: Dict[str, List[MergedSequence]]) -> FeatureTable:
    """Build the feature table from each sample's merged sequences.

    Only accepted merges are counted. Identical sequences from different
    forward/reverse pairings are summed. Columns are ordered by total
    abundance, ties by sequence, so the table does not depend on the order in
    which samples were processed.
    """
    samples = list(merged_by_sample)
    per_sample: List[Dict[str, int]] = []
    totals: Dict[str, int] = defaultdict(int)
    for sample in samples:
        counts: Dict[str, int] = defaultdict(int)
        for entry in merged_by_sample[sample]:
            if not entry.accepted or not entry.sequence:
                continue
            counts[entry.sequence] += entry.abundance
            totals[entry.sequence] += entry.abundance
        per_sample.append(counts)

    sequences = sorted(totals, key=lambda s: (-totals[s], s))
    column = {s: j for j, s in enumerate(sequences)}
    matrix = np.zeros((len(samples), len(sequences)), dtype=np.int64)
    for i, counts in enumerate(per_sample):
        for seq, n in counts.items():
            matrix[i, column[seq]] = n

    logging.info(f"Sequence table: {len(samples)} samples x {len(sequences)} sequences, "
                 f"{int(matrix.sum())} reads")
    return FeatureTable(samples, sequences, matrix)
