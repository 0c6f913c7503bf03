import sys
from pathlib import Path
import json
import pytest

# Ensure repo root (podcast_analyzer) and tests/ (fakes) are importable
ROOT = Path(__file__).resolve().parents[1]
TESTS = Path(__file__).resolve().parent
for p in (ROOT, TESTS):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from podcast_analyzer.core.config import Settings


def pretty_json(obj) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)


def make_settings(tmp_path, **overrides) -> Settings:
    """Settings for tests: mock mode, audio under tmp_path, generous rate limit, short job timeout."""
    values = {
        "use_mock_backends": True,
        "audio_dir": str(tmp_path / "audio"),
        "rate_limit_requests": 100000,
        "job_timeout_seconds": 30,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Attach the API calls a test logged (item._api_logs, see test_e2e_api._log) to the pytest-html report.
    No-op when pytest-html is not installed.
    """
    outcome = yield
    rep = outcome.get_result()
    if rep.when != "call":
        return

    api_logs = getattr(item, "_api_logs", None)
    if not api_logs:
        return

    extras = getattr(rep, "extras", [])
    try:
        from pytest_html import extras as html_extras
    except ImportError:
        return

    for entry in api_logs:
        html = (
            f'<div style="font-family: ui-monospace, Menlo, Consolas, monospace;">'
            f'<h4 style="margin:8px 0;">{entry.get("title", "API Call")}</h4>'
            f"<details><summary><b>Request</b></summary><pre>{pretty_json(entry.get('request', {}))}</pre></details>"
            f"<details><summary><b>Response</b></summary><pre>{pretty_json(entry.get('response', {}))}</pre></details>"
            f"</div>"
        )
        extras.append(html_extras.html(html))
    rep.extras = extras
