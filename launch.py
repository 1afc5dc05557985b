#!/usr/bin/env python3
"""Deal documents uploader launcher.

Starts gunicorn on dealdocs:create_app() and waits until /health answers.
"""

import os
import shutil
import signal
import socket
import subprocess
import sys
import time
import urllib.request

# ── Configuration ────────────────────────────────────────────
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
VENV_DIR = os.path.join(PROJECT_DIR, "venv")
HOST = os.environ.get("DEALDOCS_HOST", "127.0.0.1")
PORT = int(os.environ.get("DEALDOCS_PORT", "5000"))
HEALTH_URL = f"http://127.0.0.1:{PORT}/health"
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")

gunicorn_proc: subprocess.Popen | None = None


def log(msg: str) -> None:
    print(f"[dealdocs] {msg}", flush=True)


def port_in_use(port: int) -> bool:
    """Check if a port is already in use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(("127.0.0.1", port)) == 0


def find_gunicorn() -> str | None:
    """Prefer the project venv's gunicorn, then whatever is on PATH."""
    venv_bin = os.path.join(VENV_DIR, "bin", "gunicorn")
    if os.path.isfile(venv_bin):
        return venv_bin
    return shutil.which("gunicorn")


def wait_for_server(timeout: int = 15) -> bool:
    """Poll the health URL until the server responds or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            urllib.request.urlopen(HEALTH_URL, timeout=1)
            return True
        except OSError:
            pass
        if gunicorn_proc and gunicorn_proc.poll() is not None:
            return False
        time.sleep(0.5)
    return False


def shutdown(_signum: int = 0, _frame: object = None) -> None:
    """Gracefully stop gunicorn."""
    print()
    log("Shutting down...")
    if gunicorn_proc and gunicorn_proc.poll() is None:
        gunicorn_proc.terminate()
        try:
            gunicorn_proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            gunicorn_proc.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)
    log("Stopped.")
    sys.exit(0)


def main() -> None:
    global gunicorn_proc

    gunicorn_bin = find_gunicorn()
    if not gunicorn_bin:
        log("gunicorn not found. Install the project with:")
        log("  python3 -m venv venv && source venv/bin/activate && pip install -e .")
        sys.exit(1)

    if port_in_use(PORT):
        log(f"Port {PORT} is already in use. Is the uploader already running?")
        sys.exit(1)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    log(f"Starting uploader (gunicorn on {HOST}:{PORT})...")

    # Batches live in process memory, so one worker process with threads
    gunicorn_proc = subprocess.Popen(
        [
            gunicorn_bin,
            "--bind",
            f"{HOST}:{PORT}",
            "--workers",
            "1",
            "--threads",
            "16",
            "--timeout",
            "660",
            "--pid",
            PID_FILE,
            "--access-logfile",
            "-",
            "--error-logfile",
            "-",
            "dealdocs:create_app()",
        ],
        cwd=PROJECT_DIR,
    )

    log("Waiting for server...")
    if not wait_for_server():
        log("Server did not start. Check output above.")
        sys.exit(1)

    log(f"Uploader is running at: http://{HOST}:{PORT}")
    log("Press Ctrl+C to stop the server.")

    try:
        gunicorn_proc.wait()
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
