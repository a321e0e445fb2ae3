#!/usr/bin/env python3
"""Paired-end amplicon denoising pipeline and command line entry point.

Stages run strictly in order, each finishing for every sample before the
next begins: filter, learn error models, dereplicate and denoise, merge pairs,
build the feature table, remove chimeras, account for reads.
"""

import argparse
import json
import logging
import os
import sys
import zlib
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from tqdm import tqdm

from ampdenoise import __version__
from ampdenoise.chimera import CHIMERA_METHODS, ChimeraResult, remove_bimeras
from ampdenoise.config import PipelineConfig
from ampdenoise.denoise import denoise
from ampdenoise.derep import dereplicate_fastq
from ampdenoise.fastq import FastqPairError, find_sample_files
from ampdenoise.filtering import FilterStats, filter_sample
from ampdenoise.learn import LearnResult, learn_errors
from ampdenoise.merge import MergeResult, merge_pairs
from ampdenoise.table import FeatureTable, make_sequence_table
from ampdenoise.track import TrackRecord, assemble_track, track_violations, write_track
from ampdenoise.types import DenoiseResult, DerepResult, SamplePair


ORIENTATIONS = ("forward", "reverse")

# Per-sample failures that are isolated instead of aborting the run;
# truncated or corrupt gzip input raises EOFError or zlib.error
SAMPLE_ERRORS = (FastqPairError, OSError, ValueError, EOFError, zlib.error)


class PipelineError(Exception):
    """Raised when the run as a whole cannot continue."""
    pass


class DenoisingPipeline:
    """Runs all stages over the samples of one input directory."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.filtered_dir = os.path.join(config.output_dir, "filtered")

        self.sample_names: List[str] = []
        self.pairs: Dict[str, SamplePair] = {}
        self.failures: Dict[str, str] = {}
        self.excluded: Dict[str, str] = {}

        self.filter_stats: Dict[str, FilterStats] = {}
        self.filtered_paths: Dict[str, Tuple[str, str]] = {}
        self.error_results: Dict[str, LearnResult] = {}
        self.dereps: Dict[str, Tuple[DerepResult, DerepResult]] = {}
        self.denoised: Dict[str, Tuple[DenoiseResult, DenoiseResult]] = {}
        self.merged: Dict[str, MergeResult] = {}
        self.table: Optional[FeatureTable] = None
        self.chimera_result: Optional[ChimeraResult] = None
        self.track: List[TrackRecord] = []

    def active_samples(self) -> List[str]:
        """Samples that have not failed or been excluded, in discovery order."""
        return [n for n in self.sample_names if n not in self.failures and n not in self.excluded]

    def _fail(self, name: str, error: str) -> None:
        self.failures[name] = error
        logging.error(f"Sample {name} failed: {error}")

    def _exclude(self, name: str, reason: str) -> None:
        self.excluded[name] = reason
        logging.warning(f"Sample {name} excluded from further processing: {reason}")

    def _map_samples(self, work: Callable, names: List[str], desc: str) -> Dict[str, object]:
        """Apply work to each sample, collecting failures instead of raising.

        Returns:
            {sample name: result} for the samples that succeeded
        """
        def guarded(name):
            try:
                return name, work(name), None
            except SAMPLE_ERRORS as e:
                return name, None, str(e)

        if self.config.threads > 1 and len(names) > 1:
            with ThreadPoolExecutor(max_workers=self.config.threads) as executor:
                outcomes = list(tqdm(executor.map(guarded, names), total=len(names), desc=desc))
        else:
            outcomes = [guarded(name) for name in tqdm(names, desc=desc)]

        results = {}
        for name, result, error in outcomes:
            if error is not None:
                self._fail(name, error)
            else:
                results[name] = result
        return results

    def filter_samples(self) -> None:
        """Discover sample pairs and quality filter them into compressed FASTQ.

        Raises:
            PipelineError: If no sample has reads left after filtering
        """
        pairs, problems = find_sample_files(self.config.input_dir, self.config.forward_marker,
                                            self.config.reverse_marker, self.config.name_delimiter)
        self.pairs = {pair.name: pair for pair in pairs}
        self.sample_names = sorted(set(self.pairs) | set(problems))
        for name, problem in sorted(problems.items()):
            self._fail(name, problem)

        if not self.pairs:
            raise PipelineError(f"No paired FASTQ files found in {self.config.input_dir}")

        os.makedirs(self.filtered_dir, exist_ok=True)

        def work(name):
            paths = (os.path.join(self.filtered_dir, f"{name}_F_filt.fastq.gz"),
                     os.path.join(self.filtered_dir, f"{name}_R_filt.fastq.gz"))
            stats = filter_sample(self.pairs[name], paths[0], paths[1], self.config.filter)
            return stats, paths

        results = self._map_samples(work, self.active_samples(), "Filtering")
        for name in self.active_samples():
            stats, paths = results[name]
            self.filter_stats[name] = stats
            if stats.reads_out == 0:
                self._exclude(name, "no reads passed filtering")
            else:
                self.filtered_paths[name] = paths

        total_in = sum(s.reads_in for s in self.filter_stats.values())
        total_out = sum(s.reads_out for s in self.filter_stats.values())
        logging.info(f"Filtering kept {total_out} of {total_in} read pairs")

        if not self.filtered_paths:
            raise PipelineError("No samples have reads left after filtering")

    def learn_error_models(self) -> None:
        """Learn one error model per read orientation from all filtered samples."""
        names = self.active_samples()
        for index, label in enumerate(ORIENTATIONS):
            paths = [self.filtered_paths[n][index] for n in names]
            self.error_results[label] = learn_errors(
                paths, self.config.denoise, self.config.learn, seed=self.config.seed,
                threads=self.config.threads, label=label)

    def denoise_samples(self) -> None:
        """Dereplicate and denoise both orientations of every sample."""
        models = [self.error_results[label].model for label in ORIENTATIONS]

        def work(name):
            dereps = []
            results = []
            for index, model in enumerate(models):
                derep = dereplicate_fastq(self.filtered_paths[name][index])
                dereps.append(derep)
                results.append(denoise(derep, model, self.config.denoise))
            return tuple(dereps), tuple(results)

        results = self._map_samples(work, self.active_samples(), "Denoising")
        for name, (dereps, denoised) in results.items():
            self.dereps[name] = dereps
            self.denoised[name] = denoised
            logging.debug(f"{name}: {len(denoised[0].variants)} forward and "
                          f"{len(denoised[1].variants)} reverse variants")

    def merge_samples(self) -> None:
        """Merge forward and reverse variants of every sample."""
        def work(name):
            (fwd_derep, rev_derep), (fwd, rev) = self.dereps[name], self.denoised[name]
            return merge_pairs(fwd, fwd_derep, rev, rev_derep, self.config.merge)

        self.merged.update(self._map_samples(work, self.active_samples(), "Merging"))
        for name in self.active_samples():
            if self.merged[name].merged_reads == 0:
                self._exclude(name, "no read pairs merged")

    def build_table(self) -> FeatureTable:
        """Assemble the feature table from all merged samples.

        Raises:
            PipelineError: If no sample reached this stage
        """
        names = self.active_samples()
        if not names:
            raise PipelineError("No samples produced merged sequences")
        self.table = make_sequence_table({name: self.merged[name].merged for name in names})
        return self.table

    def remove_chimeras(self) -> ChimeraResult:
        self.chimera_result = remove_bimeras(self.table, self.config.chimera)
        return self.chimera_result

    def assemble_track(self) -> List[TrackRecord]:
        """Collect per-stage read counts for every discovered sample."""
        statuses = {name: f"failed: {error}" for name, error in self.failures.items()}
        statuses.update({name: f"excluded: {reason}" for name, reason in self.excluded.items()})

        tabled = self.table.sample_totals() if self.table is not None else {}
        nonchimeric = self.chimera_result.table.sample_totals() if self.chimera_result is not None else {}
        self.track = assemble_track(
            self.sample_names,
            input_counts={n: s.reads_in for n, s in self.filter_stats.items()},
            filtered_counts={n: s.reads_out for n, s in self.filter_stats.items()},
            denoised_forward={n: d[0].denoised_reads for n, d in self.denoised.items()},
            denoised_reverse={n: d[1].denoised_reads for n, d in self.denoised.items()},
            merged_counts={n: m.merged_reads for n, m in self.merged.items()},
            tabled_counts=tabled,
            nonchimeric_counts=nonchimeric,
            statuses=statuses,
        )
        for record in self.track:
            for problem in track_violations(record):
                logging.warning(f"Read accounting for {record.sample}: {problem}")
        return self.track

    def write_outputs(self) -> None:
        out = self.config.output_dir
        for label, result in self.error_results.items():
            result.model.to_tsv(os.path.join(out, f"errors_{label}.tsv"))
        if self.table is not None:
            self.table.to_tsv(os.path.join(out, "seqtab.tsv"))
        if self.chimera_result is not None:
            self.chimera_result.table.to_tsv(os.path.join(out, "seqtab_nochim.tsv"))
            self.chimera_result.table.write_fasta(os.path.join(out, "asvs.fasta"))
        write_track(self.track, os.path.join(out, "track.tsv"))

        summary = {
            "samples": len(self.sample_names),
            "processed": self.active_samples(),
            "failures": self.failures,
            "excluded": self.excluded,
            "error_models": {
                label: {
                    "converged": r.converged,
                    "iterations": r.iterations,
                    "history": r.history,
                    "reads": r.n_reads,
                    "bases": r.n_bases,
                    "monotonic_violations": [f"{t}@Q{q}" for t, q in r.violations],
                }
                for label, r in self.error_results.items()
            },
        }
        if self.chimera_result is not None:
            summary["sequences"] = len(self.table.sequences)
            summary["bimeras"] = len(self.chimera_result.bimeras)
            summary["asvs"] = len(self.chimera_result.table.sequences)
            summary["retained_fraction"] = self.chimera_result.retained_fraction
        with open(os.path.join(out, "run_summary.json"), 'w') as f:
            json.dump(summary, f, indent=2)

    def write_metadata(self) -> None:
        """Write run metadata to JSON file for use by post-processing tools."""
        metadata = {
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "parameters": self.config.to_dict(),
            "input_dir": os.path.abspath(self.config.input_dir),
        }
        with open(os.path.join(self.config.output_dir, "run_metadata.json"), 'w') as f:
            json.dump(metadata, f, indent=2)

    def run(self) -> FeatureTable:
        """Run every stage and write all outputs.

        Returns:
            The chimera-free feature table

        Raises:
            PipelineError: If no sample survives to the feature table
        """
        os.makedirs(self.config.output_dir, exist_ok=True)
        self.write_metadata()
        try:
            self.filter_samples()
            self.learn_error_models()
            self.denoise_samples()
            self.merge_samples()
            self.build_table()
            self.remove_chimeras()
        finally:
            self.assemble_track()
            self.write_outputs()

        if self.failures:
            logging.warning(f"{len(self.failures)} sample(s) failed: {', '.join(sorted(self.failures))}")
        if self.excluded:
            logging.warning(f"{len(self.excluded)} sample(s) excluded: {', '.join(sorted(self.excluded))}")
        logging.info(f"Final table: {len(self.chimera_result.table.samples)} samples x "
                     f"{len(self.chimera_result.table.sequences)} sequence variants")
        return self.chimera_result.table


def setup_logging(log_level: str, log_file: str = None):
    """Setup logging configuration with optional file output."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Denoise paired-end amplicon reads into exact sequence variants"
    )
    parser.add_argument("input_dir", help="Directory containing paired FASTQ files")
    parser.add_argument("-O", "--output-dir", default="ampdenoise_output",
                        help="Output directory for all files (default: ampdenoise_output)")
    parser.add_argument("--forward-marker", default="_R1",
                        help="File name part marking forward reads (default: _R1)")
    parser.add_argument("--reverse-marker", default="_R2",
                        help="File name part marking reverse reads (default: _R2)")
    parser.add_argument("--name-delimiter", default="_",
                        help="Sample name is the file name up to the first delimiter (default: _)")

    filtering = parser.add_argument_group("Filtering")
    filtering.add_argument("--trunc-len", type=int, nargs=2, default=[0, 0], metavar=("FWD", "REV"),
                           help="Truncate reads to these lengths, discarding shorter reads (default: 0 0 = off)")
    filtering.add_argument("--trim-left", type=int, nargs=2, default=[0, 0], metavar=("FWD", "REV"),
                           help="Bases to remove from the start of each read (default: 0 0)")
    filtering.add_argument("--trunc-q", type=int, default=2,
                           help="Truncate reads at the first base with quality <= this (default: 2)")
    filtering.add_argument("--max-n", type=int, default=0,
                           help="Maximum ambiguous bases per read (default: 0)")
    filtering.add_argument("--max-ee", type=float, nargs=2, default=[None, None], metavar=("FWD", "REV"),
                           help="Maximum expected errors per read (default: no limit)")
    filtering.add_argument("--min-len", type=int, default=20,
                           help="Minimum read length after trimming (default: 20)")
    filtering.add_argument("--max-len", type=int, default=0,
                           help="Maximum read length after trimming (default: 0 = off)")
    filtering.add_argument("--min-q", type=int, default=0,
                           help="Discard reads with any quality below this (default: 0 = off)")
    filtering.add_argument("--match-ids", action="store_true",
                           help="Require forward and reverse read IDs to match")

    denoising = parser.add_argument_group("Denoising")
    denoising.add_argument("--omega-a", type=float, default=1e-40,
                           help="Abundance p-value threshold for new variants (default: 1e-40)")
    denoising.add_argument("--omega-c", type=float, default=1e-40,
                           help="P-value below which reads are left uncorrected (default: 1e-40)")
    denoising.add_argument("--kmer-size", type=int, default=5,
                           help="k-mer size for the distance screen (default: 5)")
    denoising.add_argument("--kdist-cutoff", type=float, default=0.42,
                           help="Maximum k-mer distance to a variant for error copies (default: 0.42)")
    denoising.add_argument("--gap-rate", type=float, default=1e-4,
                           help="Per-column indel probability for length-differing reads (default: 1e-4)")
    denoising.add_argument("--max-shuffle", type=int, default=10,
                           help="Maximum read reassignment rounds per new variant (default: 10)")
    denoising.add_argument("--max-clusters", type=int, default=0,
                           help="Maximum variants per sample (default: 0 = no limit)")
    denoising.add_argument("--min-fold", type=float, default=1.0,
                           help="Minimum observed/expected abundance for new variants (default: 1.0)")
    denoising.add_argument("--min-hamming", type=int, default=1,
                           help="Minimum distance of new variants from their parent (default: 1)")

    learning = parser.add_argument_group("Error learning")
    learning.add_argument("--learn-bases", type=float, default=1e8,
                          help="Bases used to learn error rates (default: 1e8)")
    learning.add_argument("--max-learn-iterations", type=int, default=10,
                          help="Maximum error learning rounds (default: 10)")
    learning.add_argument("--learn-tolerance", type=float, default=1e-6,
                          help="Converged when no error rate changes by more than this (default: 1e-6)")
    learning.add_argument("--monotonic-tolerance", type=float, default=0.0,
                          help="Relative rise of an error rate with quality tolerated before warning (default: 0)")
    learning.add_argument("--randomize-learning", action="store_true",
                          help="Pick learning samples in random (seeded) order")
    learning.add_argument("--initial-errors", choices=["max", "phred"], default="max",
                          help="Starting error model (default: max)")

    merging = parser.add_argument_group("Pair merging")
    merging.add_argument("--min-overlap", type=int, default=12,
                         help="Minimum forward/reverse overlap (default: 12)")
    merging.add_argument("--max-mismatch", type=int, default=0,
                         help="Maximum mismatches in the overlap (default: 0)")
    merging.add_argument("--max-mismatch-rate", type=float, default=None,
                         help="Maximum mismatches per overlapping base (default: no limit)")
    merging.add_argument("--trim-overhang", action="store_true",
                         help="Trim sequence extending past the start of the other read")
    merging.add_argument("--just-concatenate", action="store_true",
                         help="Join forward and reverse with 10 Ns instead of overlapping")

    chimeras = parser.add_argument_group("Chimera removal")
    chimeras.add_argument("--chimera-method", choices=CHIMERA_METHODS, default="consensus",
                          help="Chimera detection method (default: consensus)")
    chimeras.add_argument("--min-fold-parent", type=float, default=1.5,
                          help="Parents must be this many times as abundant (default: 1.5)")
    chimeras.add_argument("--min-parent-abundance", type=int, default=2,
                          help="Minimum reads for a chimera parent (default: 2)")
    chimeras.add_argument("--max-shift", type=int, default=16,
                          help="Maximum terminal offset between a sequence and its parent (default: 16)")
    chimeras.add_argument("--allow-one-off", action="store_true",
                          help="Also flag chimeras one mismatch away from an exact recombinant")
    chimeras.add_argument("--min-one-off-distance", type=int, default=4,
                          help="Parents of one-off chimeras must differ from the sequence at this many positions (default: 4)")
    chimeras.add_argument("--min-sample-fraction", type=float, default=0.9,
                          help="Consensus: fraction of samples that must flag a chimera (default: 0.9)")
    chimeras.add_argument("--ignore-n-negatives", type=int, default=1,
                          help="Consensus: non-flagging samples tolerated (default: 1)")
    chimeras.add_argument("--low-retention-warning", type=float, default=0.5,
                          help="Warn when fewer reads than this fraction survive (default: 0.5)")

    parser.add_argument("--seed", type=int, default=None,
                        help="Random seed for reproducible runs")
    parser.add_argument("--threads", type=int, default=1, metavar="N",
                        help="Worker threads for per-sample stages (default: 1)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Also write the log to this file")
    parser.add_argument("--version", action="version",
                        version=f"ampdenoise {__version__}",
                        help="Show program's version number and exit")
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    if not os.path.isdir(args.input_dir):
        logging.error(f"Input directory not found: {args.input_dir}")
        sys.exit(1)

    try:
        config = PipelineConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    logging.info(f"ampdenoise {__version__}: {args.input_dir} -> {args.output_dir}")
    pipeline = DenoisingPipeline(config)
    try:
        pipeline.run()
    except PipelineError as e:
        logging.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
