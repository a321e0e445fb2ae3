#!/usr/bin/env python3
"""
Tests for merging forward and reverse variants by their overlap.
"""

import hashlib
import numpy as np
import pytest
from Bio.Seq import Seq, reverse_complement
from Bio.SeqRecord import SeqRecord

from ampdenoise.derep import dereplicate
from ampdenoise.merge import CONCAT_SPACER, MergeParams, merge_pairs, merge_sequences
from ampdenoise.types import DenoiseResult, SequenceVariant


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


AMPLICON = generate_dna_sequence("merge_amplicon", 100)
FORWARD = AMPLICON[:60]
REVERSE = reverse_complement(AMPLICON)[:60]  # Covers AMPLICON[40:]


def substituted(seq: str, pos: int) -> str:
    return seq[:pos] + "ACGT"[("ACGT".index(seq[pos]) + 1) % 4] + seq[pos + 1:]


class TestMergeSequences:

    def test_exact_overlap(self):
        outcome = merge_sequences(FORWARD, REVERSE)

        assert outcome.accepted
        assert outcome.sequence == AMPLICON
        assert outcome.overlap == 20
        assert outcome.n_match == 20
        assert outcome.n_mismatch == 0

    def test_mismatch_rejected(self):
        reverse = reverse_complement(substituted(AMPLICON, 50))[:60]
        outcome = merge_sequences(FORWARD, reverse)

        assert not outcome.accepted
        assert outcome.reject_reason == "too many mismatches"
        assert outcome.n_mismatch == 1

    def test_mismatch_tolerated_forward_base_wins(self):
        reverse = reverse_complement(substituted(AMPLICON, 50))[:60]
        outcome = merge_sequences(FORWARD, reverse, MergeParams(max_mismatch=1))

        assert outcome.accepted
        assert outcome.sequence == AMPLICON

    def test_mismatch_rate(self):
        reverse = reverse_complement(substituted(AMPLICON, 50))[:60]
        params = MergeParams(max_mismatch=5, max_mismatch_rate=0.01)
        outcome = merge_sequences(FORWARD, reverse, params)

        assert not outcome.accepted
        assert outcome.n_mismatch / outcome.overlap > 0.01

    def test_too_short_for_overlap(self):
        outcome = merge_sequences("ACGTACGTAC", "GTACGTACGT")
        assert not outcome.accepted
        assert outcome.reject_reason == "no overlap"

    def test_ambiguous_overlap(self):
        # A periodic read places the short mate equally well at several offsets
        outcome = merge_sequences("ACGT" * 10, "ACGT" * 3)
        assert not outcome.accepted
        assert outcome.reject_reason == "ambiguous overlap"

    def test_overhangs(self):
        forward = AMPLICON[20:80]
        reverse = reverse_complement(AMPLICON[:70])

        kept = merge_sequences(forward, reverse)
        assert kept.accepted
        assert kept.sequence == AMPLICON[:80]

        trimmed = merge_sequences(forward, reverse, MergeParams(trim_overhang=True))
        assert trimmed.sequence == AMPLICON[20:70]

    def test_just_concatenate(self):
        outcome = merge_sequences(FORWARD, REVERSE, MergeParams(just_concatenate=True))
        assert outcome.accepted
        assert outcome.sequence == FORWARD + CONCAT_SPACER + AMPLICON[40:]

    def test_params_validation(self):
        with pytest.raises(ValueError):
            MergeParams(min_overlap=0)
        with pytest.raises(ValueError):
            MergeParams(max_mismatch_rate=2.0)


def reads(seqs):
    return [SeqRecord(Seq(s), id=f"r{i}", description="",
                      letter_annotations={"phred_quality": [35] * len(s)})
            for i, s in enumerate(seqs)]


def variant(seq, abundance):
    return SequenceVariant(sequence=seq, abundance=abundance, n0=abundance, n1=0, n_unique=1)


class TestMergePairs:
    """Tests for merging all variant pairings of a sample."""

    def test_error_reads_follow_their_variant(self):
        forward_error = substituted(FORWARD, 10)
        fwd_derep = dereplicate(reads([FORWARD, FORWARD, forward_error, FORWARD, forward_error]))
        rev_derep = dereplicate(reads([REVERSE] * 5))

        # Both forward uniques were assigned to the single forward variant
        fwd = DenoiseResult([variant(FORWARD, 5)], np.array([0, 0]), np.zeros((16, 41)))
        rev = DenoiseResult([variant(REVERSE, 5)], np.array([0]), np.zeros((16, 41)))

        result = merge_pairs(fwd, fwd_derep, rev, rev_derep)

        assert len(result.merged) == 1
        assert result.merged[0].sequence == AMPLICON
        assert result.merged[0].abundance == 5
        assert result.merged_reads == 5
        assert result.rejected == []

    def test_pairings_counted_separately(self):
        other = generate_dna_sequence("merge_other", 100)
        fwd_seqs = [FORWARD] * 3 + [other[:60]] * 2
        rev_seqs = [REVERSE] * 3 + [reverse_complement(other)[:60]] * 2
        fwd_derep = dereplicate(reads(fwd_seqs))
        rev_derep = dereplicate(reads(rev_seqs))
        fwd = DenoiseResult([variant(FORWARD, 3), variant(other[:60], 2)], np.array([0, 1]), np.zeros((16, 41)))
        rev = DenoiseResult([variant(REVERSE, 3), variant(reverse_complement(other)[:60], 2)],
                            np.array([0, 1]), np.zeros((16, 41)))

        result = merge_pairs(fwd, fwd_derep, rev, rev_derep)

        assert [(m.sequence, m.abundance) for m in result.merged] == [(AMPLICON, 3), (other, 2)]

    def test_uncorrected_mate_not_counted(self):
        junk = generate_dna_sequence("merge_junk", 60)
        fwd_derep = dereplicate(reads([FORWARD] * 4))
        rev_derep = dereplicate(reads([REVERSE] * 3 + [junk]))
        fwd = DenoiseResult([variant(FORWARD, 4)], np.array([0]), np.zeros((16, 41)))
        rev = DenoiseResult([variant(REVERSE, 3)], np.array([0, -1]), np.zeros((16, 41)))

        result = merge_pairs(fwd, fwd_derep, rev, rev_derep)
        assert result.merged_reads == 3

    def test_failed_merges_reported(self):
        fwd_derep = dereplicate(reads([FORWARD] * 4))
        rev_derep = dereplicate(reads([REVERSE] * 4))
        fwd = DenoiseResult([variant(FORWARD, 4)], np.array([0]), np.zeros((16, 41)))
        rev = DenoiseResult([variant(REVERSE, 4)], np.array([0]), np.zeros((16, 41)))

        result = merge_pairs(fwd, fwd_derep, rev, rev_derep, MergeParams(min_overlap=30))

        assert result.merged == []
        assert result.rejected_reads == 4
        assert not result.rejected[0].accepted

    def test_unpaired_reads(self):
        fwd_derep = dereplicate(reads([FORWARD] * 4))
        rev_derep = dereplicate(reads([REVERSE] * 3))
        fwd = DenoiseResult([variant(FORWARD, 4)], np.array([0]), np.zeros((16, 41)))
        rev = DenoiseResult([variant(REVERSE, 3)], np.array([0]), np.zeros((16, 41)))

        with pytest.raises(ValueError, match="read counts differ"):
            merge_pairs(fwd, fwd_derep, rev, rev_derep)
