"""
Lifecycle of the local service pair: the chat server and its ngrok tunnel.

The admin server starts both as child processes, then polls ngrok's local
inspection API until the public tunnel URL shows up. Stopping terminates
both processes, escalating to kill when they do not exit in time.
"""

import logging
import subprocess
import sys
import threading
import time
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

import httpx

from chatbot.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ServiceAlreadyRunning(Exception):
    """Raised by start() when both services are already up."""

    def __init__(self, url: Optional[str]):
        super().__init__("Services are already running")
        self.url = url


class ServiceStartError(Exception):
    """Raised when the services could not be started or the tunnel never came up."""


class ServiceManager:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        http_get: Callable[..., httpx.Response] = httpx.get,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or default_settings
        self._popen = popen
        self._http_get = http_get
        self._sleep = sleep
        self._lock = threading.Lock()
        self._chat_proc: Optional[subprocess.Popen] = None
        self._ngrok_proc: Optional[subprocess.Popen] = None
        self._url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def chat_command(self) -> List[str]:
        return [
            sys.executable, "-m", "uvicorn", "chatbot.chat:app",
            "--host", self.settings.CHAT_HOST,
            "--port", str(self.settings.CHAT_PORT),
        ]

    def ngrok_command(self) -> List[str]:
        return [self.settings.NGROK_BINARY, "http", str(self.settings.CHAT_PORT), "--log", "stdout"]

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @staticmethod
    def _alive(proc: Optional[subprocess.Popen]) -> bool:
        return proc is not None and proc.poll() is None

    @property
    def is_running(self) -> bool:
        return self._alive(self._chat_proc) and self._alive(self._ngrok_proc)

    @property
    def url(self) -> Optional[str]:
        return self._url if self.is_running else None

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return self._status_locked()

    def _status_locked(self) -> Dict[str, Any]:
        chat_running = self._alive(self._chat_proc)
        ngrok_running = self._alive(self._ngrok_proc)
        return {
            "status": "running" if chat_running and ngrok_running else "stopped",
            "chatService": {
                "running": chat_running,
                "pid": self._chat_proc.pid if chat_running else None,
            },
            "ngrokService": {
                "running": ngrok_running,
                "pid": self._ngrok_proc.pid if ngrok_running else None,
                "url": self._url if ngrok_running else None,
            },
        }

    # -------------------------------------------------------------------------
    # Start / stop
    # -------------------------------------------------------------------------

    def start(self) -> str:
        """
        Launch the chat server and the tunnel and wait for the public URL.

        Returns:
            The https tunnel URL

        Raises:
            ServiceAlreadyRunning: both processes are already alive
            ServiceStartError: a process failed to launch or no URL appeared
        """
        with self._lock:
            if self.is_running:
                raise ServiceAlreadyRunning(self._url)

            # Leftovers from a half-dead previous run
            self._stop_locked()

            try:
                logger.info("Starting chat server", extra={"command": " ".join(self.chat_command())})
                self._chat_proc = self._popen(self.chat_command())
                logger.info("Starting ngrok tunnel", extra={"command": " ".join(self.ngrok_command())})
                self._ngrok_proc = self._popen(
                    self.ngrok_command(),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as e:
                logger.error(f"Failed to launch services: {e}")
                self._stop_locked()
                raise ServiceStartError(f"Failed to launch services: {e}") from e

            try:
                url = self._wait_for_tunnel()
                if not url:
                    raise ServiceStartError("Timed out waiting for the ngrok tunnel URL")
                # The chat server may die while ngrok is already serving
                self._ensure_alive()
            except ServiceStartError as e:
                logger.error(str(e))
                self._stop_locked()
                raise

            self._url = url
            logger.info(f"Services started, tunnel URL: {url}")
            return url

    def stop(self) -> bool:
        """
        Stop both processes.

        Returns:
            True if anything was running
        """
        with self._lock:
            was_running = self._alive(self._chat_proc) or self._alive(self._ngrok_proc)
            self._stop_locked()
        if was_running:
            logger.info("Services stopped")
        return was_running

    def _stop_locked(self) -> None:
        for name, proc in (("ngrok", self._ngrok_proc), ("chat server", self._chat_proc)):
            self._terminate(name, proc)
        self._ngrok_proc = None
        self._chat_proc = None
        self._url = None

    def _terminate(self, name: str, proc: Optional[subprocess.Popen]) -> None:
        if not self._alive(proc):
            return
        logger.debug(f"Terminating {name} (pid {proc.pid})")
        proc.terminate()
        try:
            proc.wait(timeout=self.settings.SERVICE_STOP_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning(f"{name} did not exit after terminate, killing (pid {proc.pid})")
            proc.kill()
            proc.wait()

    # -------------------------------------------------------------------------
    # Tunnel discovery
    # -------------------------------------------------------------------------

    def _ensure_alive(self) -> None:
        if not self._alive(self._chat_proc):
            raise ServiceStartError("Chat server exited during startup")
        if not self._alive(self._ngrok_proc):
            raise ServiceStartError("ngrok exited before a tunnel was established")

    def _wait_for_tunnel(self) -> Optional[str]:
        attempts = self.settings.NGROK_POLL_ATTEMPTS
        for attempt in range(1, attempts + 1):
            self._ensure_alive()
            url = self._fetch_tunnel_url()
            if url:
                return url
            logger.debug(f"Tunnel URL not available yet (attempt {attempt}/{attempts})")
            if attempt < attempts:
                self._sleep(self.settings.NGROK_POLL_INTERVAL)
        return None

    def _fetch_tunnel_url(self) -> Optional[str]:
        try:
            resp = self._http_get(self.settings.NGROK_API_URL, timeout=2.0)
            resp.raise_for_status()
            tunnels = resp.json().get("tunnels") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"ngrok API not ready: {e}")
            return None

        for tunnel in tunnels:
            if tunnel.get("proto") == "https" and tunnel.get("public_url"):
                return tunnel["public_url"]
        for tunnel in tunnels:
            if tunnel.get("public_url"):
                return tunnel["public_url"]
        return None


@lru_cache()
def get_service_manager() -> ServiceManager:
    """Dependency returning the process-wide service manager."""
    return ServiceManager()
