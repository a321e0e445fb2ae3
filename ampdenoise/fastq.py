"""FASTQ input/output and paired sample discovery."""

import gzip
import logging
import os
import re
from itertools import zip_longest
from typing import Dict, Iterator, List, Tuple

from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from ampdenoise.types import SamplePair


FASTQ_SUFFIXES = (".fastq.gz", ".fq.gz", ".fastq", ".fq")


class FastqPairError(Exception):
    """Raised when a forward/reverse FASTQ pair is missing or malformed."""
    pass


def open_fastq(path: str, mode: str = "r"):
    """Open a FASTQ file in text mode, transparently handling gzip."""
    if path.endswith(".gz"):
        return gzip.open(path, mode + "t")
    return open(path, mode)


def _strip_suffix(filename: str) -> str:
    for suffix in FASTQ_SUFFIXES:
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    return filename


def find_sample_files(input_dir: str, forward_marker: str = "_R1",
                      reverse_marker: str = "_R2",
                      name_delimiter: str = "_") -> Tuple[List[SamplePair], Dict[str, str]]:
    """Find forward/reverse FASTQ pairs in a directory.

    Forward files are those whose name contains ``forward_marker``; the mate is
    the same name with the marker replaced by ``reverse_marker``. The sample
    name is the part of the file name before the first ``name_delimiter``.

    Returns:
        Tuple of (complete pairs, {sample name: problem}) where problems are
        forward or reverse files without a mate, or sample names claimed twice

    Raises:
        FileNotFoundError: If the directory does not exist
    """
    if not os.path.isdir(input_dir):
        raise FileNotFoundError(f"Input directory does not exist: {input_dir}")

    filenames = sorted(f for f in os.listdir(input_dir) if f.endswith(FASTQ_SUFFIXES))
    forward_files = [f for f in filenames if forward_marker in f]

    def sample_name(filename):
        stem = _strip_suffix(filename)
        name = stem.split(name_delimiter)[0] if name_delimiter else stem
        return name or stem

    samples = []
    problems = {}
    seen = {}
    mates = set()
    for forward in forward_files:
        name = sample_name(forward)

        # Replace only the last occurrence so sample names may contain the marker
        idx = forward.rfind(forward_marker)
        reverse = forward[:idx] + reverse_marker + forward[idx + len(forward_marker):]
        mates.add(reverse)
        if reverse not in filenames:
            problems[name] = f"No reverse mate '{reverse}' for forward file '{forward}'"
            continue
        if name in seen:
            problems[name] = f"Sample name '{name}' derived from both '{seen[name]}' and '{forward}'"
            continue
        seen[name] = forward

        samples.append(SamplePair(name=name,
                                  forward_path=os.path.join(input_dir, forward),
                                  reverse_path=os.path.join(input_dir, reverse)))

    for reverse in filenames:
        if reverse_marker not in reverse or reverse in mates or reverse in forward_files:
            continue
        idx = reverse.rfind(reverse_marker)
        forward = reverse[:idx] + forward_marker + reverse[idx + len(reverse_marker):]
        name = sample_name(reverse)
        if name not in problems:
            problems[name] = f"No forward mate '{forward}' for reverse file '{reverse}'"

    # A name claimed twice is ambiguous for both files
    samples = [s for s in samples if s.name not in problems]
    logging.info(f"Found {len(samples)} paired samples in {input_dir}")
    return samples, problems


def discover_samples(input_dir: str, forward_marker: str = "_R1",
                     reverse_marker: str = "_R2",
                     name_delimiter: str = "_") -> List[SamplePair]:
    """Like find_sample_files, but any unpaired or ambiguous file is an error.

    Raises:
        FileNotFoundError: If the directory does not exist
        FastqPairError: If a forward or reverse file has no mate, or two pairs
            resolve to the same sample name
    """
    samples, problems = find_sample_files(input_dir, forward_marker, reverse_marker, name_delimiter)
    if problems:
        raise FastqPairError("; ".join(problems.values()))
    return samples


_MATE_SUFFIX = re.compile(r"/[12]$")


def _mate_id(record_id: str) -> str:
    return _MATE_SUFFIX.sub("", record_id)


def read_paired_records(forward_path: str, reverse_path: str,
                        match_ids: bool = False) -> Iterator[Tuple[SeqRecord, SeqRecord]]:
    """Yield forward/reverse record pairs in file order.

    Raises:
        FastqPairError: If the files hold different numbers of reads, or if
            ``match_ids`` is set and the mates' IDs disagree
    """
    with open_fastq(forward_path) as fwd_handle, open_fastq(reverse_path) as rev_handle:
        pairs = zip_longest(SeqIO.parse(fwd_handle, "fastq"), SeqIO.parse(rev_handle, "fastq"))
        for index, (fwd, rev) in enumerate(pairs):
            if fwd is None or rev is None:
                shorter = forward_path if fwd is None else reverse_path
                raise FastqPairError(f"Mismatched read counts: {shorter} ends after {index} reads")
            if match_ids and _mate_id(fwd.id) != _mate_id(rev.id):
                raise FastqPairError(f"Read {index}: forward ID '{fwd.id}' does not match reverse ID '{rev.id}'")
            yield fwd, rev


def read_fastq(path: str) -> List[SeqRecord]:
    with open_fastq(path) as handle:
        return list(SeqIO.parse(handle, "fastq"))


def count_reads(path: str) -> int:
    """Count the reads in a (possibly gzipped) FASTQ file."""
    with open_fastq(path) as handle:
        return sum(1 for _ in SeqIO.parse(handle, "fastq"))


def write_fastq(records: List[SeqRecord], path: str) -> int:
    """Write records to a (possibly gzipped) FASTQ file, returning the count written."""
    with open_fastq(path, "w") as handle:
        return SeqIO.write(records, handle, "fastq")
