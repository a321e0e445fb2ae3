#!/usr/bin/env python3
"""
Tests for the samples x sequences feature table.
"""

import os
import tempfile
import shutil
import numpy as np
import pytest

from ampdenoise.table import FeatureTable, make_sequence_table
from ampdenoise.types import MergedSequence


def merged(seq, abundance, accepted=True):
    return MergedSequence(sequence=seq if accepted else "", abundance=abundance,
                          forward_index=0, reverse_index=0, n_match=20, n_mismatch=0,
                          overlap=20, accepted=accepted,
                          reject_reason=None if accepted else "too many mismatches")


class TestMakeSequenceTable:

    def test_union_of_sequences(self):
        table = make_sequence_table({
            "A": [merged("AAAA", 10), merged("CCCC", 5)],
            "B": [merged("CCCC", 20), merged("", 7, accepted=False)],
        })

        assert table.samples == ["A", "B"]
        assert table.sequences == ["CCCC", "AAAA"]
        assert table.counts.tolist() == [[5, 10], [20, 0]]

    def test_identical_sequences_summed(self):
        table = make_sequence_table({"A": [merged("AAAA", 3), merged("AAAA", 4)]})
        assert table.count("A", "AAAA") == 7

    def test_column_order_independent_of_sample_order(self):
        groups = {
            "A": [merged("GGGG", 5), merged("TTTT", 5)],
            "B": [merged("TTTT", 1), merged("CCCC", 3)],
        }
        forward = make_sequence_table(groups)
        backward = make_sequence_table(dict(reversed(list(groups.items()))))

        assert forward.sequences == backward.sequences == ["TTTT", "GGGG", "CCCC"]

    def test_empty(self):
        table = make_sequence_table({"A": []})
        assert table.shape == (1, 0)
        assert table.total() == 0


class TestFeatureTable:

    @pytest.fixture
    def table(self):
        return FeatureTable(["A", "B"], ["CCCC", "AAAA", "GGGG"], [[5, 10, 0], [20, 0, 1]])

    @pytest.fixture
    def temp_dir(self):
        test_dir = tempfile.mkdtemp(prefix='ampdenoise_table_test_')
        yield test_dir
        shutil.rmtree(test_dir)

    def test_totals(self, table):
        assert table.sample_totals() == {"A": 15, "B": 21}
        assert table.column_totals().tolist() == [25, 10, 1]
        assert table.total() == 36

    def test_count_of_absent_sequence(self, table):
        assert table.count("A", "TTTT") == 0

    def test_select_columns(self, table):
        kept = table.select_columns([True, False, True])
        assert kept.sequences == ["CCCC", "GGGG"]
        assert kept.counts.tolist() == [[5, 0], [20, 1]]
        assert kept.samples == table.samples

    def test_asv_ids(self, table):
        assert table.asv_ids() == ["ASV1", "ASV2", "ASV3"]

    def test_tsv_round_trip(self, table, temp_dir):
        path = os.path.join(temp_dir, "seqtab.tsv")
        table.to_tsv(path)
        assert FeatureTable.from_tsv(path) == table

    def test_tsv_with_ids(self, table, temp_dir):
        path = os.path.join(temp_dir, "seqtab.tsv")
        table.to_tsv(path, use_ids=True)
        with open(path) as f:
            assert f.readline().rstrip("\n").split("\t") == ["sample", "ASV1", "ASV2", "ASV3"]
            assert f.readline().rstrip("\n").split("\t") == ["A", "5", "10", "0"]

    def test_fasta(self, table, temp_dir):
        path = os.path.join(temp_dir, "asvs.fasta")
        table.write_fasta(path)
        with open(path) as f:
            lines = f.read().splitlines()
        assert lines[:4] == [">ASV1 size=25", "CCCC", ">ASV2 size=10", "AAAA"]

    def test_validation(self):
        with pytest.raises(ValueError, match="unique"):
            FeatureTable(["A"], ["AAAA", "AAAA"], [[1, 2]])
        with pytest.raises(ValueError, match="non-negative"):
            FeatureTable(["A"], ["AAAA"], [[-1]])

    def test_equality(self, table):
        same = FeatureTable(list(table.samples), list(table.sequences), np.array(table.counts))
        assert same == table
        assert table.select_columns([True, True, False]) != table
