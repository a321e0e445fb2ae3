"""
ampdenoise: Exact sequence variant inference for paired-end Illumina amplicon reads.

Reads are quality filtered, an error model is learned from the data itself,
and each sample's reads are partitioned into sequence variants that are then
merged, tabulated across samples and screened for chimeras.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
