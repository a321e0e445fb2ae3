"""De novo detection and removal of two-parent chimeras (bimeras).

A bimera is a sequence whose 5' part matches one more abundant sequence and
whose 3' part matches another, the two parts together spanning it entirely.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Sequence

import edlib
import numpy as np

from ampdenoise.table import FeatureTable


CHIMERA_METHODS = ("consensus", "pooled")


@dataclass
class ChimeraParams:
    """Chimera detection parameters.

    Attributes:
        method: 'consensus' flags per sample and votes, 'pooled' tests the
            column totals once
        min_fold_parent: Parents must be at least this many times as abundant
        min_parent_abundance: Parents must have at least this many reads
        allow_one_off: Also flag bimeras with one mismatch to the parent model
        min_one_off_parent_distance: Parents used for one-off bimeras must
            differ from the query at this many positions
        max_shift: Maximum terminal offset between query and parent alignments
        min_sample_fraction: Consensus: fraction of samples that must flag
        ignore_n_negatives: Consensus: non-flagging samples that are tolerated
        low_retention_warning: Warn when fewer reads than this fraction survive
    """
    method: str = "consensus"
    min_fold_parent: float = 1.5
    min_parent_abundance: int = 2
    allow_one_off: bool = False
    min_one_off_parent_distance: int = 4
    max_shift: int = 16
    min_sample_fraction: float = 0.9
    ignore_n_negatives: int = 1
    low_retention_warning: float = 0.5

    def __post_init__(self):
        if self.method not in CHIMERA_METHODS:
            raise ValueError(f"Unknown chimera method {self.method!r}, expected one of {CHIMERA_METHODS}")


class MatchProfile(NamedTuple):
    """How far a query matches a parent from either end."""
    left: int  # Query bases matching before the first difference
    right: int  # Query bases matching after the last difference
    left_one_off: int  # As left, tolerating one mismatch
    right_one_off: int
    differences: int


class ChimeraResult(NamedTuple):
    table: FeatureTable  # Table without bimeric columns
    bimeras: List[str]
    retained_fraction: float


def _columns(sequence: str, parent: str, max_shift: int) -> Optional[List[bool]]:
    """Per query base, whether it matches the parent.

    Returns None when the alignment needs a terminal shift beyond max_shift.
    """
    if len(sequence) == len(parent):
        return [a == b for a, b in zip(sequence, parent)]

    # HW places the shorter sequence inside the longer one with free end gaps
    query_inside = len(sequence) < len(parent)
    if query_inside:
        shorter, longer = sequence, parent
    else:
        shorter, longer = parent, sequence
    result = edlib.align(shorter, longer, mode="HW", task="path")
    start, end = result['locations'][0]
    if start > max_shift or len(longer) - 1 - end > max_shift:
        return None
    nice = edlib.getNiceAlignment(result, shorter, longer)
    if query_inside:
        query, target = nice['query_aligned'], nice['target_aligned']
    else:
        query, target = nice['target_aligned'], nice['query_aligned']

    # Query bases hanging over the parent ends have nothing to match
    matches = [] if query_inside else [False] * start
    for q_char, t_char in zip(query, target):
        if q_char == '-':
            # Deletion in the query breaks the run on both sides
            if matches:
                matches[-1] = False
            continue
        matches.append(q_char == t_char)
    if not query_inside:
        matches.extend([False] * (len(longer) - 1 - end))
    return matches


def match_profile(sequence: str, parent: str, max_shift: int = 16) -> Optional[MatchProfile]:
    """Left and right match extents of a query against one parent."""
    matches = _columns(sequence, parent, max_shift)
    if matches is None:
        return None
    mismatch_pos = [i for i, m in enumerate(matches) if not m]
    n = len(matches)
    if not mismatch_pos:
        return MatchProfile(left=n, right=n, left_one_off=n, right_one_off=n, differences=0)
    left = mismatch_pos[0]
    right = n - 1 - mismatch_pos[-1]
    left_oo = mismatch_pos[1] if len(mismatch_pos) > 1 else n
    right_oo = n - 1 - mismatch_pos[-2] if len(mismatch_pos) > 1 else n
    return MatchProfile(left=left, right=right, left_one_off=left_oo, right_one_off=right_oo,
                        differences=len(mismatch_pos))


def is_bimera(sequence: str, parents: Sequence[str], allow_one_off: bool = False,
              min_one_off_parent_distance: int = 4, max_shift: int = 16,
              profiles: Optional[Dict[str, Optional[MatchProfile]]] = None) -> bool:
    """Test whether a sequence is an exact two-parent recombinant.

    Args:
        sequence: Query sequence
        parents: Candidate parent sequences (already restricted to more
            abundant sequences by the caller)
        allow_one_off: Also accept recombinants with one extra mismatch
        min_one_off_parent_distance: Minimum query-parent distance for one-off parents
        max_shift: Maximum terminal alignment shift
        profiles: Optional cache of parent -> MatchProfile for this query

    Returns:
        True if the query can be built from a left part of one parent and a
        right part of another; False if it is identical to a parent
    """
    length = len(sequence)
    max_left = max_right = 0
    oo_left = oo_right = 0
    for parent in parents:
        if profiles is not None and parent in profiles:
            profile = profiles[parent]
        else:
            profile = match_profile(sequence, parent, max_shift)
            if profiles is not None:
                profiles[parent] = profile
        if profile is None:
            continue
        if profile.differences == 0:
            return False
        max_left = max(max_left, profile.left)
        max_right = max(max_right, profile.right)
        if allow_one_off and profile.differences >= min_one_off_parent_distance:
            oo_left = max(oo_left, profile.left_one_off)
            oo_right = max(oo_right, profile.right_one_off)

    if max_left + max_right >= length:
        return True
    if allow_one_off and (max_left + oo_right >= length or oo_left + max_right >= length):
        return True
    return False


def is_bimera_table(table: FeatureTable, params: Optional[ChimeraParams] = None) -> np.ndarray:
    """Flag bimeric columns of a feature table.

    Columns are evaluated in order of decreasing total abundance and only
    earlier (more abundant) columns may serve as parents, so the most abundant
    column is never flagged.

    Returns:
        Boolean array, True for columns judged bimeric
    """
    params = params or ChimeraParams()
    counts = table.counts
    n_cols = counts.shape[1]
    flags = np.zeros(n_cols, dtype=bool)
    if n_cols == 0:
        return flags

    totals = table.column_totals()
    order = sorted(range(n_cols), key=lambda j: (-totals[j], j))
    rank = {j: r for r, j in enumerate(order)}

    for j in order:
        query = table.sequences[j]
        earlier = [k for k in order[:rank[j]]]
        if not earlier:
            continue
        profiles: Dict[str, Optional[MatchProfile]] = {}

        def flagged(abundances: np.ndarray, query_abundance: int) -> bool:
            parents = [table.sequences[k] for k in earlier
                       if abundances[k] >= params.min_fold_parent * query_abundance
                       and abundances[k] >= params.min_parent_abundance]
            if len(parents) < 2:
                return False
            return is_bimera(query, parents, params.allow_one_off,
                             params.min_one_off_parent_distance, params.max_shift, profiles)

        if params.method == "pooled":
            flags[j] = flagged(totals, int(totals[j]))
            continue

        present = np.nonzero(counts[:, j] > 0)[0]
        n_samples = len(present)
        n_flag = sum(1 for i in present if flagged(counts[i], int(counts[i, j])))
        flags[j] = n_samples > 0 and (
            n_flag >= n_samples * params.min_sample_fraction
            or (n_flag > 0 and n_flag >= n_samples - params.ignore_n_negatives))

    return flags


def remove_bimeras(table: FeatureTable, params: Optional[ChimeraParams] = None) -> ChimeraResult:
    """Drop bimeric columns from every sample of the table."""
    params = params or ChimeraParams()
    flags = is_bimera_table(table, params)
    kept = table.select_columns(~flags)
    bimeras = [s for s, f in zip(table.sequences, flags) if f]

    total = table.total()
    retained = kept.total() / total if total > 0 else 1.0
    logging.info(f"Identified {len(bimeras)} bimeras out of {len(table.sequences)} input sequences "
                 f"({params.method}); {retained:.1%} of reads retained")
    if retained < params.low_retention_warning:
        logging.warning(f"Only {retained:.1%} of reads survived chimera removal; "
                        "check primer removal and amplification conditions")
    return ChimeraResult(table=kept, bimeras=bimeras, retained_fraction=retained)
