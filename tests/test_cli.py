#!/usr/bin/env python3
"""
Command line tests for the ampdenoise pipeline.
"""

import hashlib
import os
import tempfile
import shutil
import subprocess
import sys
import pytest
from Bio import SeqIO
from Bio.Seq import Seq, reverse_complement
from Bio.SeqRecord import SeqRecord


REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


AMPLICON = generate_dna_sequence("cli_amplicon", 100)


def write_pair(directory, name, copies, reverse_copies=None):
    def records(seq, n):
        return [SeqRecord(Seq(seq), id=f"{name}.{i}", description="",
                          letter_annotations={"phred_quality": [36] * len(seq)})
                for i in range(n)]
    SeqIO.write(records(AMPLICON[:60], copies), os.path.join(directory, f"{name}_R1.fastq"), "fastq")
    SeqIO.write(records(reverse_complement(AMPLICON)[:60], reverse_copies or copies),
                os.path.join(directory, f"{name}_R2.fastq"), "fastq")


def run_cli(*args):
    env = dict(os.environ)
    env["PYTHONPATH"] = REPO_ROOT + os.pathsep + env.get("PYTHONPATH", "")
    return subprocess.run([sys.executable, '-m', 'ampdenoise.pipeline', *args],
                          capture_output=True, text=True, env=env)


class TestCommandLine:

    @pytest.fixture
    def temp_dir(self):
        test_dir = tempfile.mkdtemp(prefix='ampdenoise_cli_test_')
        yield test_dir
        shutil.rmtree(test_dir)

    def test_version(self):
        result = run_cli('--version')
        assert result.returncode == 0
        assert "ampdenoise" in result.stdout

    def test_missing_input_directory(self, temp_dir):
        result = run_cli(os.path.join(temp_dir, "missing"), '-O', os.path.join(temp_dir, "out"))
        assert result.returncode == 1
        assert "Input directory not found" in result.stderr

    def test_only_sample_mismatched(self, temp_dir):
        input_dir = os.path.join(temp_dir, "input")
        os.makedirs(input_dir)
        write_pair(input_dir, "S1", 10, reverse_copies=8)

        result = run_cli(input_dir, '-O', os.path.join(temp_dir, "out"))

        assert result.returncode == 1
        assert "Mismatched read counts" in result.stderr
        assert "No samples" in result.stderr

    def test_successful_run(self, temp_dir):
        input_dir = os.path.join(temp_dir, "input")
        out = os.path.join(temp_dir, "out")
        os.makedirs(input_dir)
        write_pair(input_dir, "S1", 30)
        write_pair(input_dir, "S2", 20)

        result = run_cli(input_dir, '-O', out, '--seed', '1', '--threads', '2',
                         '--trunc-len', '60', '60', '--max-ee', '2', '2',
                         '--chimera-method', 'pooled')

        assert result.returncode == 0, result.stderr
        with open(os.path.join(out, "seqtab_nochim.tsv")) as f:
            lines = f.read().splitlines()
        assert lines[0].split("\t") == ["sample", AMPLICON]
        assert lines[1].split("\t") == ["S1", "30"]
        assert lines[2].split("\t") == ["S2", "20"]

    def test_invalid_option(self, temp_dir):
        result = run_cli(temp_dir, '--chimera-method', 'bogus')
        assert result.returncode == 2
