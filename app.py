"""
AtCoder Rating Dashboard (Flask)

What it does:
- Accepts one or more AtCoder usernames
- Fetches each user's contest history through a same-origin proxy route
- Charts rating and performance over time (Chart.js, one line per user)
- Shows contest count, max rating, latest rating and last rating change per user

Setup:
  pip install -e .

Run:
  python app.py
  open http://localhost:5000

  The dashboard calls /api/users/<username> on its own server, so it needs a
  server that handles concurrent requests (the threaded dev server, or several
  workers/threads under gunicorn). A single-worker sync server would block on
  that self-request; set PROXY_BASE_URL to a separate proxy instance, or
  PROXY_TIMEOUT_SECONDS to bound the wait.

Endpoints:
  GET       /                     -> dashboard form
  POST      /                     -> dashboard for form fields username=...
  GET       /api/users/<username> -> AtCoder history JSON, relayed verbatim
  GET|POST  /api/dashboard        -> chart data + stats as JSON
  GET       /healthz              -> liveness + effective config
"""

from __future__ import annotations

import logging
import os
import time
from typing import Dict, List

import requests
from flask import Flask, jsonify, render_template, request

from dashboard import DashboardState, EMPTY_INPUT_ERROR, ProxyFetcher

# -----------------------------
# Config
# -----------------------------
ATCODER_BASE_URL = os.getenv("ATCODER_BASE_URL", "https://atcoder.jp").rstrip("/")

# Fixed pause before each upstream call; throttles the fan-out, nothing more.
PROXY_DELAY_MS = int(os.getenv("PROXY_DELAY_MS", "40"))

MAX_WORKERS = int(os.getenv("MAX_WORKERS", "8"))

# Empty means "same origin as the incoming request".
PROXY_BASE_URL = os.getenv("PROXY_BASE_URL", "").strip()

# Dashboard -> proxy timeout. Empty means no timeout.
PROXY_TIMEOUT_SECONDS = float(os.getenv("PROXY_TIMEOUT_SECONDS", "").strip() or 0) or None

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# -----------------------------
# Flask app
# -----------------------------
app = Flask(__name__)


# -----------------------------
# Upstream helpers
# -----------------------------
def _history_url(username: str) -> str:
    return f"{ATCODER_BASE_URL}/users/{requests.utils.quote(username, safe='')}/history/json"


def _headers() -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": "atcoder-rating-dashboard-flask",
    }


@app.route("/api/users/<username>", methods=["GET"])
def proxy_user_history(username: str):
    # Query string (cache busting) is intentionally ignored.
    url = _history_url(username)
    try:
        time.sleep(PROXY_DELAY_MS / 1000.0)
        resp = requests.get(url, headers=_headers())

        if not resp.ok:
            logger.warning("AtCoder returned %s for %s", resp.status_code, username)
            return jsonify({"error": "Error fetching data"}), resp.status_code

        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.error("Failed to fetch %s: %s", url, e)
        return jsonify({"error": "Failed to fetch data from external API"}), 500

    logger.info("Relayed history for %s", username)
    return jsonify(data), 200


# -----------------------------
# Dashboard
# -----------------------------
def _get_usernames_from_request() -> List[str]:
    if request.is_json:
        payload = request.get_json(silent=True)
        # {"usernames": [...]}, a bare list, or a single string.
        values = payload.get("usernames") if isinstance(payload, dict) else payload
        if not isinstance(values, list):
            values = [values]
        return [v for v in values if isinstance(v, str)]
    return request.values.getlist("username")


def _proxy_base() -> str:
    return PROXY_BASE_URL or request.host_url


def _run_dashboard(usernames: List[str], fetch: bool) -> DashboardState:
    state = DashboardState()
    state.load_usernames(usernames)
    if fetch:
        state.fetch_data(ProxyFetcher(_proxy_base(), timeout=PROXY_TIMEOUT_SECONDS), max_workers=MAX_WORKERS)
    return state


@app.route("/", methods=["GET", "POST"])
def home():
    usernames = _get_usernames_from_request()
    # A bare GET just shows the empty form; submitting always runs a fetch cycle.
    fetch = request.method == "POST" or bool(usernames)
    state = _run_dashboard(usernames, fetch)
    return render_template("index.html", **state.to_context())


@app.route("/api/dashboard", methods=["GET", "POST"])
def api_dashboard():
    state = _run_dashboard(_get_usernames_from_request(), fetch=True)
    context = state.to_context()

    status = 200
    if state.error == EMPTY_INPUT_ERROR:
        status = 400
    elif state.error:
        status = 502
    return jsonify(context), status


@app.route("/healthz", methods=["GET"])
def healthz():
    return jsonify(
        {
            "ok": True,
            "atcoder_base_url": ATCODER_BASE_URL,
            "proxy_delay_ms": PROXY_DELAY_MS,
            "max_workers": MAX_WORKERS,
        }
    )


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    # Threaded: the dashboard calls back into /api/users/<username> on this server.
    app.run(host="0.0.0.0", port=port, debug=True, threaded=True)
