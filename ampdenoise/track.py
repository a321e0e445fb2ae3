"""Per-sample read survival through the pipeline stages."""

import csv
from dataclasses import asdict, dataclass, fields
from typing import Dict, List, Optional


@dataclass
class TrackRecord:
    """Read pair counts for one sample after each stage.

    ``status`` is "ok" for samples that reached the feature table, otherwise
    the reason the sample was dropped.
    """
    sample: str
    input: int = 0
    filtered: int = 0
    denoised_forward: int = 0
    denoised_reverse: int = 0
    merged: int = 0
    tabled: int = 0
    nonchimeric: int = 0
    status: str = "ok"


TRACK_COLUMNS = [f.name for f in fields(TrackRecord)]


def assemble_track(samples: List[str],
                   input_counts: Dict[str, int],
                   filtered_counts: Dict[str, int],
                   denoised_forward: Dict[str, int],
                   denoised_reverse: Dict[str, int],
                   merged_counts: Dict[str, int],
                   tabled_counts: Dict[str, int],
                   nonchimeric_counts: Dict[str, int],
                   statuses: Optional[Dict[str, str]] = None) -> List[TrackRecord]:
    """Combine the per-stage counts into one record per sample.

    Stages a sample never reached count as zero.
    """
    statuses = statuses or {}
    return [
        TrackRecord(
            sample=sample,
            input=input_counts.get(sample, 0),
            filtered=filtered_counts.get(sample, 0),
            denoised_forward=denoised_forward.get(sample, 0),
            denoised_reverse=denoised_reverse.get(sample, 0),
            merged=merged_counts.get(sample, 0),
            tabled=tabled_counts.get(sample, 0),
            nonchimeric=nonchimeric_counts.get(sample, 0),
            status=statuses.get(sample, "ok"),
        )
        for sample in samples
    ]


def track_violations(record: TrackRecord) -> List[str]:
    """List the ways a record breaks read conservation; empty when consistent."""
    problems = []
    if record.filtered > record.input:
        problems.append(f"filtered ({record.filtered}) exceeds input ({record.input})")
    if record.denoised_forward > record.filtered:
        problems.append(f"denoised forward ({record.denoised_forward}) exceeds filtered ({record.filtered})")
    if record.denoised_reverse > record.filtered:
        problems.append(f"denoised reverse ({record.denoised_reverse}) exceeds filtered ({record.filtered})")
    if record.merged > min(record.denoised_forward, record.denoised_reverse):
        problems.append(f"merged ({record.merged}) exceeds denoised "
                        f"({min(record.denoised_forward, record.denoised_reverse)})")
    if record.tabled != record.merged:
        problems.append(f"tabled ({record.tabled}) differs from merged ({record.merged})")
    if record.nonchimeric > record.tabled:
        problems.append(f"nonchimeric ({record.nonchimeric}) exceeds tabled ({record.tabled})")
    return problems


def write_track(records: List[TrackRecord], path: str) -> None:
    with open(path, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=TRACK_COLUMNS, delimiter='\t')
        writer.writeheader()
        for record in records:
            writer.writerow(asdict(record))


def read_track(path: str) -> List[TrackRecord]:
    records = []
    with open(path, newline='') as f:
        for row in csv.DictReader(f, delimiter='\t'):
            values = {k: (v if k in ("sample", "status") else int(v)) for k, v in row.items()}
            records.append(TrackRecord(**values))
    return records
