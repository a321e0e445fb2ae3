#!/usr/bin/env python3
"""
Tests for the divisive denoising engine.
"""

import hashlib
import math
import numpy as np
import pytest
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord
from scipy.stats import poisson

from ampdenoise.denoise import (
    DenoiseParams,
    abundance_log_pvalues,
    denoise,
    encode_sequence,
    kmer_counts,
)
from ampdenoise.derep import dereplicate
from ampdenoise.error_model import ErrorModel
from ampdenoise.types import DerepResult


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


def mutate(seq: str, positions) -> str:
    """Substitute the base at each position with the next nucleotide."""
    bases = list(seq)
    for pos in positions:
        bases[pos] = "ACGT"[("ACGT".index(bases[pos]) + 1) % 4]
    return "".join(bases)


def derep_of(groups, quality=35) -> DerepResult:
    """Dereplicate reads given as (sequence, copies) groups."""
    reads = []
    for seq, copies in groups:
        for _ in range(copies):
            reads.append(SeqRecord(Seq(seq), id=f"r{len(reads)}", description="",
                                   letter_annotations={"phred_quality": [quality] * len(seq)}))
    return dereplicate(reads)


TRUE_SEQ = generate_dna_sequence("denoise_true", 60)
ONE_OFF = mutate(TRUE_SEQ, [25])
DISTINCT = mutate(TRUE_SEQ, range(3, 60, 6))
UNRELATED = generate_dna_sequence("denoise_unrelated", 60)
MODEL = ErrorModel.from_phred(40)


class TestDenoise:

    def test_single_unique_sequence(self):
        result = denoise(derep_of([(TRUE_SEQ, 20)]), MODEL)

        assert len(result.variants) == 1
        variant = result.variants[0]
        assert variant.sequence == TRUE_SEQ
        assert variant.abundance == 20
        assert variant.n0 == 20
        assert variant.n_unique == 1
        assert variant.birth_pval is None
        assert result.assignment.tolist() == [0]

    def test_error_copies_absorbed(self):
        result = denoise(derep_of([(TRUE_SEQ, 100), (ONE_OFF, 2)]), MODEL)

        assert len(result.variants) == 1
        assert result.variants[0].sequence == TRUE_SEQ
        assert result.variants[0].abundance == 102
        assert result.variants[0].n1 == 2
        assert result.assignment.tolist() == [0, 0]

    def test_distinct_sequence_promoted(self):
        result = denoise(derep_of([(TRUE_SEQ, 100), (DISTINCT, 50)]), MODEL)

        assert [v.sequence for v in result.variants] == [TRUE_SEQ, DISTINCT]
        assert [v.abundance for v in result.variants] == [100, 50]
        assert result.variants[1].birth_hamming == 10
        assert result.variants[1].birth_pval is not None
        assert result.variants[1].birth_pval < 1e-40

    def test_indel_copies_absorbed(self):
        deleted = TRUE_SEQ[:30] + TRUE_SEQ[31:]
        result = denoise(derep_of([(TRUE_SEQ, 100), (deleted, 2)]), MODEL)

        assert len(result.variants) == 1
        assert result.variants[0].abundance == 102

    def test_unrelated_singleton_uncorrected(self):
        derep = derep_of([(TRUE_SEQ, 100), (UNRELATED, 1)])
        result = denoise(derep, MODEL)

        assert len(result.variants) == 1
        assert result.assignment.tolist() == [0, -1]
        assert result.denoised_reads == 100

    def test_deterministic(self):
        derep = derep_of([(TRUE_SEQ, 100), (DISTINCT, 50), (ONE_OFF, 3), (mutate(DISTINCT, [40]), 2)])
        first = denoise(derep, MODEL)
        second = denoise(derep, MODEL)

        assert np.array_equal(first.assignment, second.assignment)
        assert first.variants == second.variants
        assert np.array_equal(first.transitions, second.transitions)

    def test_max_clusters(self):
        derep = derep_of([(TRUE_SEQ, 100), (DISTINCT, 50)])
        result = denoise(derep, MODEL, DenoiseParams(max_clusters=1))

        assert len(result.variants) == 1
        assert result.denoised_reads == 100

    def test_min_hamming(self):
        derep = derep_of([(TRUE_SEQ, 100), (DISTINCT, 50)])
        result = denoise(derep, MODEL, DenoiseParams(min_hamming=11))
        assert len(result.variants) == 1

    def test_transition_counts(self):
        result = denoise(derep_of([(TRUE_SEQ, 100), (ONE_OFF, 2)]), MODEL)
        trans = result.transitions

        assert trans.shape == (16, 41)
        assert trans.sum() == 102 * 60
        assert np.count_nonzero(trans[:, :35]) == 0
        # The substitution at position 25 seen twice
        from_code = "ACGT".index(TRUE_SEQ[25])
        to_code = "ACGT".index(ONE_OFF[25])
        assert trans[4 * from_code + to_code, 35] == 2

    def test_empty_input(self):
        result = denoise(DerepResult(records=[], read_map=np.empty(0, dtype=np.int64)), MODEL)
        assert result.variants == []
        assert result.denoised_reads == 0


class TestAbundancePValues:

    def test_singletons_never_significant(self):
        logp = abundance_log_pvalues(np.array([1, 1]), np.log(np.array([1e-10, 10.0])))
        assert logp.tolist() == [0.0, 0.0]

    def test_matches_conditional_poisson(self):
        mu = 0.5
        logp = abundance_log_pvalues(np.array([3]), np.array([math.log(mu)]))
        expected = poisson.sf(2, mu) / poisson.sf(0, mu)
        assert math.exp(logp[0]) == pytest.approx(expected, rel=1e-9)

    def test_tiny_expectation(self):
        logp = abundance_log_pvalues(np.array([3]), np.array([-30.0]))
        assert logp[0] == pytest.approx(-60.0 - math.log(6.0))

    def test_zero_expectation(self):
        logp = abundance_log_pvalues(np.array([2]), np.array([-np.inf]))
        assert np.isneginf(logp[0])


class TestHelpers:

    def test_encode_sequence(self):
        assert encode_sequence("ACGTN").tolist() == [0, 1, 2, 3, 255]

    def test_kmer_counts(self):
        assert kmer_counts(encode_sequence("ACGTA"), 2).sum() == 4
        assert kmer_counts(encode_sequence("ACNGT"), 2).sum() == 2
        assert kmer_counts(encode_sequence("AC"), 5).sum() == 0

    def test_params_validation(self):
        with pytest.raises(ValueError):
            DenoiseParams(omega_a=0)
        with pytest.raises(ValueError):
            DenoiseParams(gap_rate=1.5)
