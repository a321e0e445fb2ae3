"""Run configuration for the denoising pipeline."""

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from ampdenoise.chimera import ChimeraParams
from ampdenoise.denoise import DenoiseParams
from ampdenoise.filtering import FilterParams
from ampdenoise.learn import LearnParams
from ampdenoise.merge import MergeParams


@dataclass
class PipelineConfig:
    """Everything needed to reproduce a pipeline run.

    Attributes:
        input_dir: Directory holding the paired FASTQ files
        output_dir: Directory receiving all outputs
        forward_marker: File name part identifying forward read files
        reverse_marker: Replacement for forward_marker giving the reverse mate
        name_delimiter: Sample name is the file name up to the first delimiter
        seed: Seed for every randomized choice (sample order in error learning)
        threads: Worker threads for per-sample stages
    """
    input_dir: str
    output_dir: str = "ampdenoise_output"
    forward_marker: str = "_R1"
    reverse_marker: str = "_R2"
    name_delimiter: str = "_"
    seed: Optional[int] = None
    threads: int = 1
    filter: FilterParams = field(default_factory=FilterParams)
    denoise: DenoiseParams = field(default_factory=DenoiseParams)
    learn: LearnParams = field(default_factory=LearnParams)
    merge: MergeParams = field(default_factory=MergeParams)
    chimera: ChimeraParams = field(default_factory=ChimeraParams)

    def __post_init__(self):
        if self.threads < 1:
            raise ValueError(f"threads must be at least 1, got {self.threads}")
        if self.forward_marker == self.reverse_marker:
            raise ValueError("Forward and reverse file markers must differ")

    @classmethod
    def from_args(cls, args) -> 'PipelineConfig':
        """Create config from command-line arguments."""
        max_ee = tuple(math.inf if v is None or v < 0 else v for v in args.max_ee)
        return cls(
            input_dir=args.input_dir,
            output_dir=args.output_dir,
            forward_marker=args.forward_marker,
            reverse_marker=args.reverse_marker,
            name_delimiter=args.name_delimiter,
            seed=args.seed,
            threads=args.threads,
            filter=FilterParams(
                trunc_len=tuple(args.trunc_len),
                trim_left=tuple(args.trim_left),
                trunc_q=args.trunc_q,
                max_n=args.max_n,
                max_ee=max_ee,
                min_len=args.min_len,
                max_len=args.max_len,
                min_q=args.min_q,
                match_ids=args.match_ids,
            ),
            denoise=DenoiseParams(
                omega_a=args.omega_a,
                omega_c=args.omega_c,
                kmer_size=args.kmer_size,
                kdist_cutoff=args.kdist_cutoff,
                gap_rate=args.gap_rate,
                max_shuffle=args.max_shuffle,
                max_clusters=args.max_clusters,
                min_fold=args.min_fold,
                min_hamming=args.min_hamming,
            ),
            learn=LearnParams(
                n_bases=args.learn_bases,
                max_iterations=args.max_learn_iterations,
                randomize=args.randomize_learning,
                tolerance=args.learn_tolerance,
                initial=args.initial_errors,
                monotonic_tolerance=args.monotonic_tolerance,
            ),
            merge=MergeParams(
                min_overlap=args.min_overlap,
                max_mismatch=args.max_mismatch,
                max_mismatch_rate=args.max_mismatch_rate,
                trim_overhang=args.trim_overhang,
                just_concatenate=args.just_concatenate,
            ),
            chimera=ChimeraParams(
                method=args.chimera_method,
                min_fold_parent=args.min_fold_parent,
                min_parent_abundance=args.min_parent_abundance,
                allow_one_off=args.allow_one_off,
                min_one_off_parent_distance=args.min_one_off_distance,
                max_shift=args.max_shift,
                min_sample_fraction=args.min_sample_fraction,
                ignore_n_negatives=args.ignore_n_negatives,
                low_retention_warning=args.low_retention_warning,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain-JSON view of the configuration (infinities become None)."""
        def clean(value):
            if isinstance(value, dict):
                return {k: clean(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [clean(v) for v in value]
            if isinstance(value, float) and math.isinf(value):
                return None
            return value
        return clean(asdict(self))
