# Main page for the Podcast Analyzer polling client. Run: streamlit run ui/main_content.py
import json
import os
import time

import requests
import streamlit as st

API_BASE = os.getenv("API_BASE", "http://localhost:8000")
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))

TERMINAL = ("Completed", "Failed", "Cancelled")


def _status_badge(label: str, color: str) -> None:
    """Render a colored status badge."""
    st.markdown(
        f'<div style="background:{color};color:white;padding:6px 14px;border-radius:6px;'
        f'display:inline-block;font-weight:500;">{label}</div>',
        unsafe_allow_html=True,
    )


STATUS_COLORS = {
    "Pending": "#6c757d",
    "ExtractingAudio": "#0d6efd",
    "Transcribing": "#0d6efd",
    "Analyzing": "#6f42c1",
    "Completed": "#28a745",
    "Failed": "#dc3545",
    "Cancelled": "#fd7e14",
}


def post_json(path: str, payload: dict):
    """POST JSON payload to API path."""
    return requests.post(f"{API_BASE}{path}", json=payload, timeout=30)


def get_json(path: str):
    return requests.get(f"{API_BASE}{path}", timeout=15)


def delete(path: str):
    return requests.delete(f"{API_BASE}{path}", timeout=15)


def pretty_json(obj):
    """Return a pretty-printed JSON string for display."""
    return json.dumps(obj, indent=2, ensure_ascii=False)


def _detail(r) -> str:
    try:
        detail = r.json().get("detail")
    except ValueError:
        detail = None
    return detail if isinstance(detail, str) else f"HTTP {r.status_code}"


def _format_duration(seconds) -> str:
    if not isinstance(seconds, (int, float)) or seconds <= 0:
        return "Unknown"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}" if hours else f"{minutes}:{secs:02d}"


def _render_metadata(job: dict) -> None:
    meta = job.get("metadata")
    if not meta:
        return
    cols = st.columns([1, 3])
    if meta.get("thumbnail"):
        cols[0].image(meta["thumbnail"])
    with cols[1]:
        st.markdown(f"### {meta.get('title') or 'Untitled episode'}")
        st.caption(f"{meta.get('author') or 'Unknown author'} · {_format_duration(meta.get('duration'))} · {job.get('platform')}")
        if meta.get("description"):
            with st.expander("Description"):
                st.write(meta["description"])


def _render_analysis(analysis: dict) -> None:
    """Show whichever analysis sections exist; absent ones are skipped without comment."""
    labels = [k for k in ("summary", "topics", "mindmap", "insights") if analysis.get(k)]
    if not labels:
        return
    tabs = st.tabs([k.capitalize() for k in labels])
    for tab, key in zip(tabs, labels):
        data = analysis[key]
        with tab:
            if key == "summary":
                st.write(data.get("summary", ""))
                for point in data.get("keyPoints") or []:
                    st.markdown(f"- {point}")
                if data.get("readingTime"):
                    st.caption(f"Reading time: {data['readingTime']}")
            elif key == "topics":
                for topic in data.get("topics") or []:
                    if isinstance(topic, dict):
                        st.markdown(f"**{topic.get('name', '')}** ({topic.get('relevance', '')}) {topic.get('description', '')}")
                    else:
                        st.markdown(f"- {topic}")
                if data.get("categories"):
                    st.caption("Categories: " + ", ".join(str(c) for c in data["categories"]))
            elif key == "mindmap":
                st.markdown(f"**{data.get('centralTopic', '')}**")
                for branch in data.get("branches") or []:
                    if not isinstance(branch, dict):
                        continue
                    st.markdown(f"- {branch.get('name', '')}")
                    for sub in branch.get("subtopics") or []:
                        st.markdown(f"    - {sub}")
            else:
                for item in data.get("insights") or []:
                    if isinstance(item, dict):
                        st.markdown(f"**{item.get('title', '')}** [{item.get('impact', '')}] {item.get('description', '')}")
                for advice in data.get("actionableAdvice") or []:
                    st.markdown(f"- {advice}")
                for quote in data.get("quotableQuotes") or []:
                    st.markdown(f"> {quote}")
            with st.expander("Raw JSON"):
                st.code(pretty_json(data), language="json")


def _render_chat(job_id: str) -> None:
    st.subheader("Ask about this episode")
    if "messages" not in st.session_state:
        st.session_state.messages = []
    for msg in st.session_state.messages:
        with st.chat_message(msg["role"]):
            st.markdown(msg["content"])

    prompt = st.chat_input("Type and press Enter")
    if not prompt:
        return
    with st.chat_message("user"):
        st.markdown(prompt)
    st.session_state.messages.append({"role": "user", "content": prompt})
    r = post_json(f"/jobs/{job_id}/chat", {"message": prompt.strip()})
    with st.chat_message("assistant"):
        if r.status_code == 200:
            reply = r.json().get("reply", "")
            st.markdown(reply)
        elif r.status_code == 400 and "disallowed" in _detail(r).lower():
            reply = "(message flagged)"
            st.warning("Your message was flagged (e.g. prompt injection). Please rephrase.")
        else:
            reply = "Something went wrong."
            st.error(f"{reply} {_detail(r)}")
    st.session_state.messages.append({"role": "assistant", "content": reply})


def _reset_job() -> None:
    st.session_state.job_id = None
    st.session_state.job = None
    st.session_state.messages = []


def run_main() -> None:
    """Render the page: submit form, then the polled job view."""
    st.set_page_config(page_title="Podcast Analyzer", layout="wide")
    st.title("🎧 Podcast Analyzer")
    st.caption("Paste an episode or video link; the audio is extracted, transcribed and analyzed in the background.")

    with st.sidebar:
        try:
            h = get_json("/health")
            if h.status_code == 200:
                health = h.json()
                st.caption(f"API: {health.get('status')} · backends: {health.get('backends')}")
                for tool, ok in (health.get("tools") or {}).items():
                    st.caption(f"{'✓' if ok else '✗'} {tool}")
        except requests.RequestException:
            st.error(f"API not reachable at {API_BASE}")

    if "job_id" not in st.session_state:
        _reset_job()

    # -------------------------
    # Submit
    # -------------------------
    if not st.session_state.job_id:
        url = st.text_input("Episode URL", placeholder="https://www.youtube.com/watch?v=...")
        c1, c2, c3 = st.columns(3)
        transcribe = c1.checkbox("Transcribe audio", value=True)
        analyze = c2.checkbox("Analyze content", value=True, disabled=not transcribe)
        language = c3.text_input("Language (optional)", placeholder="en")
        if st.button("▶ Start", type="primary"):
            payload = {
                "url": url.strip(),
                "transcribeAudio": transcribe,
                "analyzeContent": transcribe and analyze,
            }
            if language.strip():
                payload["language"] = language.strip()
            r = post_json("/jobs", payload)
            if r.status_code == 200:
                st.session_state.job_id = r.json()["sessionId"]
                st.rerun()
            else:
                st.error(_detail(r))
        return

    # -------------------------
    # Poll
    # -------------------------
    job_id = st.session_state.job_id
    r = get_json(f"/jobs/{job_id}")
    if r.status_code == 404:
        st.error("Job not found (the server may have restarted).")
        if st.button("New job"):
            _reset_job()
            st.rerun()
        return
    if r.status_code != 200:
        st.error(_detail(r))
        time.sleep(POLL_INTERVAL_SECONDS)
        st.rerun()
    job = r.json()
    st.session_state.job = job
    status = job.get("status", "")

    _status_badge(status, STATUS_COLORS.get(status, "#6c757d"))
    st.progress(int(job.get("progress", 0)) / 100.0, text=job.get("currentStep", ""))
    _render_metadata(job)

    if status not in TERMINAL:
        if st.button("✖ Cancel"):
            cr = delete(f"/jobs/{job_id}")
            if cr.status_code != 200:
                st.warning(_detail(cr))
            st.rerun()
        time.sleep(POLL_INTERVAL_SECONDS)
        st.rerun()

    if status == "Failed":
        st.error(job.get("error") or "Processing failed.")
        if st.button("↻ Retry"):
            r = post_json("/jobs", {
                "url": job.get("url"),
                "transcribeAudio": job.get("transcribeAudio", True),
                "analyzeContent": job.get("analyzeContent", True),
            })
            if r.status_code == 200:
                _reset_job()
                st.session_state.job_id = r.json()["sessionId"]
                st.rerun()
            st.error(_detail(r))

    if job.get("audioLocation"):
        st.audio(f"{API_BASE}/jobs/{job_id}/audio")

    if job.get("transcript"):
        with st.expander("Transcript", expanded=False):
            st.write(job["transcript"])
            if job.get("transcriptConfidence") is not None:
                st.caption(f"Confidence: {job['transcriptConfidence']:.2f} · language: {job.get('transcriptLanguage')}")

    if job.get("analysis"):
        _render_analysis(job["analysis"])

    # -------------------------
    # Re-run stages
    # -------------------------
    c1, c2, c3 = st.columns(3)
    if job.get("audioLocation") and c1.button("Re-transcribe"):
        rr = post_json(f"/jobs/{job_id}/transcribe", {})
        if rr.status_code != 200:
            st.warning(_detail(rr))
        st.rerun()
    if job.get("transcript") and c2.button("Re-analyze"):
        rr = post_json(f"/jobs/{job_id}/analyze", {"analysisType": "comprehensive"})
        if rr.status_code != 200:
            st.warning(_detail(rr))
        st.rerun()
    if c3.button("New job"):
        _reset_job()
        st.rerun()

    if job.get("transcript"):
        _render_chat(job_id)


if __name__ == "__main__":
    run_main()
