"""
Tests for the chat server / ngrok lifecycle and the admin service endpoints.
"""

import subprocess
import sys
import threading

import httpx
import pytest

from chatbot.config import Settings
from chatbot.services import ServiceAlreadyRunning, ServiceManager, ServiceStartError

from conftest import FakeProcess

TUNNEL_URL = "https://abc123.ngrok.app"


def tunnels_response(*tunnels):
    return httpx.Response(
        200,
        json={"tunnels": list(tunnels)},
        request=httpx.Request("GET", "http://127.0.0.1:4040/api/tunnels"),
    )


class Recorder:
    """Records launched processes and plays back a sequence of ngrok API results."""

    def __init__(self, api_results=None, process_factory=FakeProcess):
        self.api_results = list(api_results or [])
        self.process_factory = process_factory
        self.processes = []
        self.launch_kwargs = []
        self.sleeps = []
        self.api_calls = 0

    def popen(self, args, **kwargs):
        proc = self.process_factory(args)
        self.processes.append(proc)
        self.launch_kwargs.append(kwargs)
        return proc

    def http_get(self, url, timeout=None):
        self.api_calls += 1
        result = self.api_results.pop(0) if self.api_results else tunnels_response()
        if isinstance(result, Exception):
            raise result
        return result

    def sleep(self, seconds):
        self.sleeps.append(seconds)

    def manager(self, **overrides):
        config = {"NGROK_POLL_ATTEMPTS": 3, "NGROK_POLL_INTERVAL": 0.5, "CHAT_PORT": 3000}
        config.update(overrides)
        return ServiceManager(
            settings=Settings(**config),
            popen=self.popen,
            http_get=self.http_get,
            sleep=self.sleep,
        )


class TestCommands:
    def test_chat_command(self):
        manager = ServiceManager(settings=Settings(CHAT_HOST="0.0.0.0", CHAT_PORT=3100))

        assert manager.chat_command() == [
            sys.executable, "-m", "uvicorn", "chatbot.chat:app", "--host", "0.0.0.0", "--port", "3100",
        ]

    def test_ngrok_command(self):
        manager = ServiceManager(settings=Settings(NGROK_BINARY="/opt/ngrok", CHAT_PORT=3100))

        assert manager.ngrok_command() == ["/opt/ngrok", "http", "3100", "--log", "stdout"]


class TestStart:
    def test_start_returns_https_url(self):
        recorder = Recorder([
            tunnels_response(
                {"proto": "http", "public_url": "http://abc123.ngrok.app"},
                {"proto": "https", "public_url": TUNNEL_URL},
            )
        ])
        manager = recorder.manager()

        assert manager.start() == TUNNEL_URL
        assert manager.is_running
        assert manager.url == TUNNEL_URL
        assert [p.args[0] for p in recorder.processes] == [sys.executable, "ngrok"]
        assert recorder.launch_kwargs[1] == {"stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL}

    def test_falls_back_to_any_tunnel(self):
        recorder = Recorder([tunnels_response({"proto": "http", "public_url": "http://abc123.ngrok.app"})])

        assert recorder.manager().start() == "http://abc123.ngrok.app"

    def test_polls_until_tunnel_appears(self):
        recorder = Recorder([
            httpx.ConnectError("connection refused"),
            tunnels_response(),
            tunnels_response({"proto": "https", "public_url": TUNNEL_URL}),
        ])

        assert recorder.manager().start() == TUNNEL_URL
        assert recorder.api_calls == 3
        assert recorder.sleeps == [0.5, 0.5]

    def test_timeout_stops_processes(self):
        recorder = Recorder([tunnels_response()] * 3)
        manager = recorder.manager()

        with pytest.raises(ServiceStartError, match="Timed out"):
            manager.start()

        assert recorder.api_calls == 3
        assert recorder.sleeps == [0.5, 0.5]
        assert all(p.terminated for p in recorder.processes)
        assert not manager.is_running

    def test_ngrok_api_error_status_is_retried(self):
        error = httpx.Response(502, request=httpx.Request("GET", "http://127.0.0.1:4040/api/tunnels"))
        recorder = Recorder([error, tunnels_response({"proto": "https", "public_url": TUNNEL_URL})])

        assert recorder.manager().start() == TUNNEL_URL

    def test_ngrok_exiting_early_fails_fast(self):
        def factory(args):
            return FakeProcess(args, exit_code=1 if args[0] == "ngrok" else None)

        recorder = Recorder(process_factory=factory)
        manager = recorder.manager()

        with pytest.raises(ServiceStartError):
            manager.start()

        assert recorder.api_calls == 0
        chat_proc = recorder.processes[0]
        assert chat_proc.terminated

    def test_chat_server_exiting_early_fails(self):
        def factory(args):
            return FakeProcess(args, exit_code=1 if args[0] == sys.executable else None)

        recorder = Recorder(
            [tunnels_response({"proto": "https", "public_url": TUNNEL_URL})],
            process_factory=factory,
        )
        manager = recorder.manager()

        with pytest.raises(ServiceStartError, match="Chat server exited during startup"):
            manager.start()

        ngrok_proc = recorder.processes[1]
        assert ngrok_proc.terminated
        assert manager.status()["status"] == "stopped"
        assert manager.url is None

    def test_chat_server_dying_while_tunnel_comes_up(self):
        recorder = Recorder()
        manager = recorder.manager()

        def http_get(url, timeout=None):
            # Tunnel is reported only after the chat server has crashed
            recorder.processes[0].returncode = 1
            return tunnels_response({"proto": "https", "public_url": TUNNEL_URL})

        manager._http_get = http_get

        with pytest.raises(ServiceStartError, match="Chat server exited during startup"):
            manager.start()

        assert recorder.processes[1].terminated

    def test_launch_failure(self):
        def factory(args):
            if args[0] == "ngrok":
                raise FileNotFoundError("ngrok not found")
            return FakeProcess(args)

        recorder = Recorder(process_factory=factory)
        manager = recorder.manager()

        with pytest.raises(ServiceStartError, match="ngrok not found"):
            manager.start()

        assert recorder.processes[0].terminated
        assert manager.status()["status"] == "stopped"

    def test_already_running(self):
        recorder = Recorder([tunnels_response({"proto": "https", "public_url": TUNNEL_URL})])
        manager = recorder.manager()
        manager.start()

        with pytest.raises(ServiceAlreadyRunning) as exc_info:
            manager.start()

        assert exc_info.value.url == TUNNEL_URL
        assert len(recorder.processes) == 2

    def test_restart_after_half_dead_run(self):
        recorder = Recorder([
            tunnels_response({"proto": "https", "public_url": TUNNEL_URL}),
            tunnels_response({"proto": "https", "public_url": "https://second.ngrok.app"}),
        ])
        manager = recorder.manager()
        manager.start()
        chat_proc, ngrok_proc = recorder.processes
        ngrok_proc.returncode = 1

        assert manager.start() == "https://second.ngrok.app"
        assert chat_proc.terminated
        assert len(recorder.processes) == 4


class TestStop:
    def test_stop_running_services(self):
        recorder = Recorder([tunnels_response({"proto": "https", "public_url": TUNNEL_URL})])
        manager = recorder.manager()
        manager.start()

        assert manager.stop() is True
        assert all(p.terminated and not p.killed for p in recorder.processes)
        assert manager.url is None

    def test_stop_when_not_running(self):
        assert Recorder().manager().stop() is False

    def test_kill_when_terminate_is_ignored(self):
        recorder = Recorder(
            [tunnels_response({"proto": "https", "public_url": TUNNEL_URL})],
            process_factory=lambda args: FakeProcess(args, ignores_terminate=True),
        )
        manager = recorder.manager()
        manager.start()

        manager.stop()

        assert all(p.killed for p in recorder.processes)


class TestStatus:
    def test_stopped(self):
        assert Recorder().manager().status() == {
            "status": "stopped",
            "chatService": {"running": False, "pid": None},
            "ngrokService": {"running": False, "pid": None, "url": None},
        }

    def test_running(self):
        recorder = Recorder([tunnels_response({"proto": "https", "public_url": TUNNEL_URL})])
        manager = recorder.manager()
        manager.start()
        chat_proc, ngrok_proc = recorder.processes

        assert manager.status() == {
            "status": "running",
            "chatService": {"running": True, "pid": chat_proc.pid},
            "ngrokService": {"running": True, "pid": ngrok_proc.pid, "url": TUNNEL_URL},
        }


    def test_waits_for_start_or_stop_in_progress(self):
        manager = Recorder().manager()
        results = []

        with manager._lock:
            reader = threading.Thread(target=lambda: results.append(manager.status()))
            reader.start()
            reader.join(timeout=0.2)
            assert reader.is_alive()
            assert results == []

        reader.join(timeout=5)
        assert results[0]["status"] == "stopped"


class TestServiceEndpoints:
    def test_start(self, admin_client):
        response = admin_client.get("/api/service/start")

        assert response.status_code == 200
        assert response.json() == {"message": "Services started successfully", "url": TUNNEL_URL}

    def test_start_twice_conflicts(self, admin_client):
        admin_client.get("/api/service/start")

        response = admin_client.get("/api/service/start")

        assert response.status_code == 409
        assert response.json() == {"error": "Services are already running", "url": TUNNEL_URL}

    def test_start_failure_is_500(self, admin_client, service_manager):
        service_manager._http_get = lambda url, timeout=None: tunnels_response()

        response = admin_client.get("/api/service/start")

        assert response.status_code == 500
        assert response.json() == {"error": "Timed out waiting for the ngrok tunnel URL"}

    def test_stop(self, admin_client):
        admin_client.get("/api/service/start")

        response = admin_client.get("/api/service/stop")

        assert response.json() == {"message": "Services stopped successfully"}
        assert admin_client.get("/api/service/status").json()["status"] == "stopped"

    def test_stop_when_not_running(self, admin_client):
        response = admin_client.get("/api/service/stop")

        assert response.status_code == 200
        assert response.json() == {"message": "Services were not running"}

    def test_status(self, admin_client):
        admin_client.get("/api/service/start")

        data = admin_client.get("/api/service/status").json()

        assert data["status"] == "running"
        assert data["chatService"]["running"] is True
        assert data["ngrokService"]["url"] == TUNNEL_URL


class TestAdminShutdown:
    def test_shutdown_stops_services(self, databases, service_manager):
        from fastapi.testclient import TestClient

        from chatbot.admin import app
        from chatbot.services import get_service_manager

        launched = []

        def popen(args, **kwargs):
            proc = FakeProcess(args)
            launched.append(proc)
            return proc

        service_manager._popen = popen
        app.dependency_overrides[get_service_manager] = lambda: service_manager
        try:
            with TestClient(app) as client:
                assert client.get("/api/service/start").status_code == 200
                assert all(not p.terminated for p in launched)
        finally:
            app.dependency_overrides.clear()

        assert len(launched) == 2
        assert all(p.terminated for p in launched)
        assert service_manager.status()["status"] == "stopped"


class TestAdminPages:
    def test_index(self, admin_client):
        response = admin_client.get("/")

        assert response.status_code == 200
        assert "WhatsApp Chatbot Admin" in response.text

    def test_health(self, admin_client):
        assert admin_client.get("/health").json() == {"status": "ok", "reason": None}
