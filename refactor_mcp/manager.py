#!/usr/bin/env python3
"""
Refactor MCP - Daemon Manager

Keeps one refactoring daemon per port alive. The daemon's PID is kept in
a run directory, and its /health and /stats endpoints tell whether it
answers and which workspace it serves.

Usage:
    refactor-mcp-manager ensure -w /path/to/project   # start unless healthy
    refactor-mcp-manager status [--json]
    refactor-mcp-manager stop
    refactor-mcp-manager restart -w /path/to/project
"""

import argparse
import json
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import requests

logger = logging.getLogger(__name__)

DEFAULT_PORT = int(os.environ.get("REFACTOR_MCP_PORT", "7910"))
DEFAULT_RUN_DIR = Path(os.environ.get("REFACTOR_MCP_RUN_DIR", "/tmp/refactor_mcp"))
STARTUP_TIMEOUT = 15.0
STOP_TIMEOUT = 5.0
POLL_INTERVAL = 0.25


class DaemonManager:
    """PID file, health checks and start/stop for the daemon on one port."""

    def __init__(self, port: int = DEFAULT_PORT, run_dir: Path = DEFAULT_RUN_DIR):
        self.port = port
        self.run_dir = Path(run_dir)
        self.pid_file = self.run_dir / f"daemon-{port}.pid"
        self.log_file = self.run_dir / f"daemon-{port}.log"

    def _url(self, endpoint: str) -> str:
        return f"http://127.0.0.1:{self.port}/{endpoint}"

    def _get(self, endpoint: str) -> dict | None:
        try:
            resp = requests.get(self._url(endpoint), timeout=2)
        except requests.RequestException:
            return None
        if resp.status_code != 200:
            return None
        return resp.json()

    def pid(self) -> int | None:
        """The recorded PID if that process still exists; stale files are removed."""
        try:
            pid = int(self.pid_file.read_text().strip())
            os.kill(pid, 0)
            return pid
        except FileNotFoundError:
            return None
        except (ValueError, ProcessLookupError, PermissionError):
            self.pid_file.unlink(missing_ok=True)
            return None

    def health(self) -> dict | None:
        """The /health body, or None when nothing answers on the port."""
        return self._get("health")

    def healthy(self) -> bool:
        return self.health() is not None

    def status(self) -> dict:
        health = self.health()
        result = {
            "port": self.port,
            "pid": self.pid(),
            "healthy": health is not None,
            "workspace": health.get("workspace") if health else None,
            "pid_file": str(self.pid_file),
            "log_file": str(self.log_file),
        }
        if health is not None:
            stats = self._get("stats") or {}
            result["request_count"] = stats.get("request_count", 0)
            result["outcomes"] = stats.get("outcomes", {})
            result["tools"] = stats.get("tools", [])
            result["locked_documents"] = stats.get("locked_documents", [])
            result["recent"] = stats.get("recent", [])
        return result

    def ensure(self, workspace: str | None = None) -> bool:
        """Start the daemon unless one already answers on the port."""
        health = self.health()
        if health is None:
            return self.start(workspace)
        wanted = os.path.realpath(workspace or os.getcwd())
        serving = health.get("workspace")
        if serving and os.path.realpath(serving) != wanted:
            logger.warning("Daemon on port %d serves %s, not %s; use restart to switch",
                           self.port, serving, wanted)
        return True

    def start(self, workspace: str | None = None) -> bool:
        if self.healthy():
            logger.info("Daemon already answering on port %d", self.port)
            return True
        stale = self.pid()
        if stale is not None:
            logger.warning("PID %d holds the pid file but does not answer; killing it", stale)
            self._kill(stale, signal.SIGKILL)

        self.run_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        cmd = [sys.executable, "-m", "refactor_mcp.daemon", "--port", str(self.port)]
        if workspace:
            cmd += ["--workspace", workspace]
        with open(self.log_file, "a") as log:
            process = subprocess.Popen(cmd, stdout=log, stderr=log, start_new_session=True)
        self.pid_file.write_text(str(process.pid))
        logger.info("Started daemon PID %d on port %d", process.pid, self.port)

        deadline = time.monotonic() + STARTUP_TIMEOUT
        while time.monotonic() < deadline:
            if self.healthy():
                return True
            if process.poll() is not None:
                # A port taken by another program lands here
                logger.error("Daemon exited with code %d; see %s", process.returncode, self.log_file)
                self.pid_file.unlink(missing_ok=True)
                return False
            time.sleep(POLL_INTERVAL)
        logger.error("Daemon did not answer within %.0fs; see %s", STARTUP_TIMEOUT, self.log_file)
        return False

    def stop(self) -> bool:
        """SIGTERM, which lets the daemon drain in-flight requests, then SIGKILL."""
        pid = self.pid()
        if pid is None:
            logger.info("No daemon recorded for port %d", self.port)
            return True
        if not self._kill(pid, signal.SIGTERM):
            return False
        deadline = time.monotonic() + STOP_TIMEOUT
        while time.monotonic() < deadline:
            if not self._alive(pid):
                break
            time.sleep(POLL_INTERVAL)
        else:
            logger.warning("PID %d ignored SIGTERM; killing it", pid)
            self._kill(pid, signal.SIGKILL)
        self.pid_file.unlink(missing_ok=True)
        return True

    def _alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        return True

    def _kill(self, pid: int, sig: int) -> bool:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            logger.error("Not permitted to signal PID %d", pid)
            return False
        return True


def format_status(status: dict) -> str:
    if not status["healthy"]:
        state = "not answering" if status["pid"] else "not running"
        return f"Daemon on port {status['port']} is {state}\nLog file: {status['log_file']}"
    outcomes = status["outcomes"]
    lines = [
        f"Daemon on port {status['port']} (PID {status['pid'] or 'external'})",
        f"  Workspace: {status['workspace']}",
        f"  Requests: {status['request_count']} "
        f"({outcomes.get('success', 0)} ok, {outcomes.get('error', 0)} failed)",
        f"  Tools: {', '.join(status['tools'])}",
    ]
    if status["locked_documents"]:
        lines.append(f"  Busy: {', '.join(status['locked_documents'])}")
    for summary in status["recent"][-5:]:
        lines.append(f"  - {summary}")
    return "\n".join(lines)


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Refactor MCP Daemon Manager")
    parser.add_argument("command", choices=["ensure", "start", "stop", "restart", "status"])
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_PORT,
                        help=f"Daemon port (default: {DEFAULT_PORT})")
    parser.add_argument("--workspace", "-w", default=None,
                        help="Workspace for a newly started daemon (default: cwd)")
    parser.add_argument("--run-dir", type=Path, default=DEFAULT_RUN_DIR,
                        help="Directory for PID and log files")
    parser.add_argument("--json", action="store_true", help="Print status as JSON")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    manager = DaemonManager(args.port, args.run_dir)

    if args.command == "status":
        status = manager.status()
        print(json.dumps(status, indent=2) if args.json else format_status(status))
        sys.exit(0 if status["healthy"] else 1)

    if args.command == "restart":
        manager.stop()
    if args.command == "stop":
        ok = manager.stop()
    elif args.command == "ensure":
        ok = manager.ensure(args.workspace)
    else:
        ok = manager.start(args.workspace)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
