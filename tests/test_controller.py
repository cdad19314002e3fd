import threading
from unittest.mock import Mock

import pytest

from netipam.agent.control import UpdaterControl
from netipam.agent.controller import (
    ControllerClient, ControllerConfigError, ControllerHTTPError, SessionState,
    check_connection, safe_body,
)


def response(status=200, payload=None, headers=None, text="body"):
    resp = Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.reason = "OK" if resp.ok else "Error"
    resp.headers = headers or {}
    resp.text = text
    resp.json.return_value = payload if payload is not None else {"data": []}
    return resp


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class Harness:
    def __init__(self, snap):
        self.snap = snap
        self.http = Mock()
        self.clock = FakeClock()
        self.events = []
        self.client = ControllerClient(
            lambda: self.snap,
            session=self.http,
            clock=self.clock,
            sleep=lambda seconds, cancel=None: self.events.append(("sleep", seconds)),
        )

    def posts(self, *responses):
        queue = list(responses)

        def post(*args, **kwargs):
            self.events.append(("post",))
            return queue.pop(0)
        self.http.post.side_effect = post


@pytest.fixture
def harness(snapshot):
    return Harness(snapshot())


class TestConfiguration:
    def test_missing_base_url(self, snapshot):
        h = Harness(snapshot(controller_base_url=""))
        with pytest.raises(ControllerConfigError):
            h.client.get_active_clients()
        h.http.get.assert_not_called()

    def test_invalid_base_url(self, snapshot):
        h = Harness(snapshot(controller_base_url="controller.local"))
        with pytest.raises(ControllerConfigError, match="invalid"):
            h.client.login()

    def test_missing_password(self, snapshot):
        h = Harness(snapshot(controller_password=None))
        with pytest.raises(ControllerConfigError, match="password"):
            h.client.login()

    def test_api_key_required_in_api_key_mode(self, snapshot):
        h = Harness(snapshot(controller_auth_mode="apikey", controller_api_key=" "))
        with pytest.raises(ControllerConfigError, match="API key"):
            h.client.get_devices()


class TestSessionMode:
    def test_login_then_get_with_csrf(self, harness):
        harness.posts(response(headers={"X-CSRF-Token": "tok"}))
        harness.http.get.return_value = response(payload={"data": [{"mac": "aa"}]})

        payload = harness.client.get_active_clients()

        assert payload == {"data": [{"mac": "aa"}]}
        assert harness.client.state == SessionState.ACTIVE
        url = harness.http.get.call_args.args[0]
        headers = harness.http.get.call_args.kwargs["headers"]
        assert url == "https://controller.local/proxy/network/api/s/default/stat/sta"
        assert headers["X-CSRF-Token"] == "tok"
        login_url = harness.http.post.call_args.args[0]
        assert login_url == "https://controller.local/api/auth/login"

    def test_session_reused_within_ttl(self, harness):
        harness.posts(response(), response())
        harness.http.get.return_value = response()

        harness.client.get_known_clients()
        harness.clock.now += 60
        harness.client.get_devices()
        assert harness.http.post.call_count == 1

        harness.clock.now += 15 * 60
        harness.client.get_networks()
        assert harness.http.post.call_count == 2

    def test_forbidden_login_applies_cooldown(self, harness):
        harness.posts(response(403), response(403))

        with pytest.raises(ControllerHTTPError) as exc:
            harness.client.login()
        assert exc.value.status_code == 403
        assert harness.client.state == SessionState.LOGGED_OUT

        harness.clock.now += 10
        with pytest.raises(ControllerHTTPError):
            harness.client.login()

        assert harness.events == [("post",), ("sleep", 20.0), ("post",)]

    def test_unauthorized_get_relogs_once_and_retries(self, harness):
        harness.posts(response(), response())
        harness.http.get.side_effect = [response(401), response(payload={"data": [1]})]

        assert harness.client.get_devices() == {"data": [1]}
        assert harness.http.post.call_count == 2
        assert harness.http.get.call_count == 2
        assert ("sleep", 2.0) in harness.events

    def test_retry_failure_propagates(self, harness):
        harness.posts(response(), response())
        harness.http.get.side_effect = [response(401), response(401)]

        with pytest.raises(ControllerHTTPError):
            harness.client.get_devices()
        assert harness.http.get.call_count == 2

    def test_server_error_not_retried(self, harness):
        harness.posts(response())
        harness.http.get.return_value = response(500)

        with pytest.raises(ControllerHTTPError) as exc:
            harness.client.get_devices()
        assert exc.value.status_code == 500
        assert harness.http.get.call_count == 1

    def test_identity_change_resets_session(self, harness, snapshot):
        harness.posts(response(), response())
        harness.http.get.return_value = response()
        harness.client.get_devices()

        harness.snap = snapshot(controller_username="other")
        harness.client.get_devices()

        assert harness.http.post.call_count == 2
        harness.http.cookies.clear.assert_called()

    def test_identity_change_waits_for_login_lock(self, harness, snapshot):
        harness.posts(response(), response())
        harness.http.get.return_value = response()
        harness.client.get_devices()
        clears = harness.http.cookies.clear.call_count

        harness.snap = snapshot(controller_site="branch")
        with harness.client._login_lock:
            worker = threading.Thread(target=harness.client.get_devices)
            worker.start()
            worker.join(0.2)
            assert worker.is_alive()
            assert harness.client.state == SessionState.ACTIVE
            assert harness.http.cookies.clear.call_count == clears
        worker.join(5)

        assert not worker.is_alive()
        assert harness.http.cookies.clear.call_count == clears + 1
        assert harness.http.post.call_count == 2
        assert harness.http.get.call_args.args[0].endswith("/api/s/branch/stat/device")

    def test_reading_config_does_not_touch_session(self, harness, snapshot):
        harness.posts(response())
        harness.client.login()

        harness.snap = snapshot(controller_username="other")
        harness.client._config()

        assert harness.client.state == SessionState.ACTIVE
        harness.http.cookies.clear.assert_called_once()

    def test_invalid_json(self, harness):
        harness.posts(response())
        bad = response()
        bad.json.side_effect = ValueError("no json")
        harness.http.get.return_value = bad

        with pytest.raises(Exception, match="invalid JSON"):
            harness.client.get_devices()


class TestApiKeyMode:
    def test_uses_header_without_login(self, snapshot):
        h = Harness(snapshot(controller_auth_mode="ApiKey", controller_api_key="k-123"))
        h.http.get.return_value = response()

        h.client.get_active_clients()

        h.http.post.assert_not_called()
        assert h.http.get.call_args.kwargs["headers"]["X-API-KEY"] == "k-123"

    def test_unauthorized_is_not_retried(self, snapshot):
        h = Harness(snapshot(controller_auth_mode="ApiKey", controller_api_key="k-123"))
        h.http.get.return_value = response(401)

        with pytest.raises(ControllerHTTPError):
            h.client.get_active_clients()
        h.http.post.assert_not_called()
        assert h.http.get.call_count == 1


class TestHelpers:
    def test_safe_body_truncates(self):
        assert safe_body(response(text="x" * 700)) == "x" * 600 + "..."
        assert safe_body(response(text="  ")) == "(empty)"

    def test_check_connection_ok(self):
        client = Mock()
        ok, message = check_connection(client, UpdaterControl(min_gap=0))
        assert ok
        client.get_active_clients.assert_called_once()

    def test_check_connection_reports_error(self):
        client = Mock()
        client.get_active_clients.side_effect = ControllerConfigError("Controller base URL is not set.")
        ok, message = check_connection(client, UpdaterControl(min_gap=0))
        assert not ok
        assert message == "Controller base URL is not set."
