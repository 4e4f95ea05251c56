import json
from unittest.mock import MagicMock

import pytest

from svcsup import cli


@pytest.fixture
def http(monkeypatch):
    calls = []

    def fake(method):
        def _call(url, **kwargs):
            calls.append((method, url, kwargs))
            resp = MagicMock()
            resp.ok = True
            resp.json.return_value = {"ok": True}
            return resp

        return _call

    monkeypatch.setattr(cli.requests, "get", fake("GET"))
    monkeypatch.setattr(cli.requests, "post", fake("POST"))
    return calls


def test_restart_posts_with_auth_and_timeout(http, capsys):
    rc = cli.main(["--api", "http://api:8000/", "--password", "pw", "--timeout-s", "5", "restart", "3"])
    assert rc == 0
    method, url, kwargs = http[0]
    assert (method, url) == ("POST", "http://api:8000/services/3/restart")
    assert kwargs["auth"] == ("admin", "pw")
    assert kwargs["params"] == {"timeout_s": 5.0}
    assert json.loads(capsys.readouterr().out) == {"ok": True}


def test_lockdown_engage(http):
    cli.main(["--password", "pw", "lockdown", "--reason", "incident"])
    method, url, kwargs = http[0]
    assert url.endswith("/system/lockdown")
    assert kwargs["json"] == {"reason": "incident"}


def test_diagnose(http):
    cli.main(["--password", "pw", "diagnose", "7"])
    assert http[0][:2] == ("GET", "http://localhost:8000/services/7/diagnostics")
