#!/usr/bin/env python3
"""Print the configured job limits and backend mode. Run from repo root: python scripts/print_limits.py"""
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from podcast_analyzer.core.config import settings


def main():
    """Print size ceilings, per-stage timeouts, rate limit and backend mode as read from the environment."""
    print("Podcast Analyzer limits")
    print("-----------------------")
    print(f"  Backends                      = {'mock' if settings.use_mock_backends else 'real'}")
    print(f"  MAX_DOWNLOAD_MB               = {settings.max_download_mb} MB (yt-dlp --max-filesize)")
    print(f"  MAX_AUDIO_MB                  = {settings.max_audio_mb} MB (largest file sent for transcription)")
    print(f"  MAX_TRANSCRIPT_CHARS          = {settings.max_transcript_chars} (analysis / chat ceiling)")
    print(f"  EXTRACTION_TIMEOUT_SECONDS    = {settings.extraction_timeout_seconds}")
    print(f"  TRANSCRIPTION_TIMEOUT_SECONDS = {settings.transcription_timeout_seconds}")
    print(f"  ANALYSIS_TIMEOUT_SECONDS      = {settings.analysis_timeout_seconds} (per sub-task)")
    print(f"  JOB_TIMEOUT_SECONDS           = {settings.job_timeout_seconds} (whole run)")
    print(f"  Rate limit                    = {settings.rate_limit_requests} requests / {settings.rate_limit_window_seconds} s (per client IP)")
    print("")
    print("Env: USE_MOCK_BACKENDS, MAX_*_MB, *_TIMEOUT_SECONDS, RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_SECONDS")


if __name__ == "__main__":
    main()
