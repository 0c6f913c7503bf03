from podcast_analyzer.jobs.session_store import JobStatus

# status -> (offset, scale): overall = offset + stage_percent * scale
STAGE_RANGES = {
    JobStatus.EXTRACTING_AUDIO: (0, 0.6),
    JobStatus.TRANSCRIBING: (60, 0.3),
    JobStatus.ANALYZING: (90, 0.1),
}


def stage_bounds(status: JobStatus) -> tuple[int, int]:
    offset, scale = STAGE_RANGES[status]
    return offset, int(offset + 100 * scale)


def overall_progress(status: JobStatus, stage_percent: float) -> int:
    """Fold an adapter's own 0-100 into the job-wide percentage for that stage (0-60, 60-90, 90-100)."""
    offset, scale = STAGE_RANGES[status]
    pct = max(0.0, min(100.0, float(stage_percent)))
    return int(round(offset + pct * scale))
