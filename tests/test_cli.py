import json

import requests

import cli
from conftest import make_slice
from hbs.mirror import InMemoryMirror


def _mirror(*slices):
    m = InMemoryMirror()
    for s in slices:
        m.apply(s)
    return m


def test_plan_prints_desired_servers(monkeypatch, capsys):
    monkeypatch.setenv("HAPROXY_BACKEND_NAME", "be_ingress")
    monkeypatch.setenv("HAPROXY_BACKEND_PORT", "8443")
    mirror = _mirror(make_slice("s", [(["10.0.0.1"], True, None), (["10.0.0.2"], False, None)]))
    monkeypatch.setattr(cli, "build_mirror", lambda settings: mirror)

    assert cli.main(["plan"]) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["backend"] == "be_ingress"
    assert out["servers"] == [{
        "name": "10.0.0.1-8443",
        "address": "10.0.0.1",
        "port": 8443,
        "weight": 1,
        "check": True,
        "send_proxy_v2": False,
    }]


def test_config_error_exits_2(monkeypatch, capsys):
    monkeypatch.setenv("WORKER_COUNT", "zero")
    assert cli.main(["plan"]) == 2
    assert "WORKER_COUNT" in capsys.readouterr().err


def test_sync_failure_exits_1(monkeypatch, capsys):
    # Nothing listens on port 9, so begin fails with a transport error.
    monkeypatch.setenv("HAPROXY_DATAPLANE_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("HAPROXY_REQUEST_TIMEOUT_S", "1")
    monkeypatch.setattr(cli, "build_mirror", lambda settings: _mirror())

    assert cli.main(["sync"]) == 1
    assert "begin" in capsys.readouterr().err


class _Resp:
    def __init__(self, status_code):
        self.status_code = status_code
        self.ok = status_code < 400


def test_status_reports_readiness(monkeypatch, capsys):
    seen = []

    def fake_get(url, timeout):
        seen.append(url)
        return _Resp(503)

    monkeypatch.setattr(requests, "get", fake_get)
    assert cli.main(["status", "--url", "http://ctl:8080/"]) == 1
    assert seen == ["http://ctl:8080/readyz"]
    assert json.loads(capsys.readouterr().out) == {"ready": False, "status_code": 503}


def test_status_unreachable(monkeypatch, capsys):
    def refuse(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "get", refuse)
    assert cli.main(["status"]) == 1
    assert json.loads(capsys.readouterr().out)["ready"] is False
