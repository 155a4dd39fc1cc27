import json

import pytest

import cli


class _Resp:
    def __init__(self, status=200, body=None):
        self.status_code = status
        self.ok = status < 400
        self._body = body if body is not None else {}
        self.text = json.dumps(self._body)

    def json(self):
        return self._body


class _Session:
    def __init__(self):
        self.auth = None
        self.calls = []
        self.response = _Resp()

    def _record(self, method, url, **kw):
        self.calls.append((method, url, kw))
        return self.response

    def get(self, url, **kw):
        return self._record("GET", url, **kw)

    def post(self, url, **kw):
        return self._record("POST", url, **kw)

    def put(self, url, **kw):
        return self._record("PUT", url, **kw)

    def delete(self, url, **kw):
        return self._record("DELETE", url, **kw)


@pytest.fixture
def session(monkeypatch):
    s = _Session()
    monkeypatch.setattr(cli.requests, "Session", lambda: s)
    return s


def test_create_posts_spec_file(session, tmp_path, capsys):
    spec = tmp_path / "arena.json"
    spec.write_text(json.dumps({"resources": [{"kind": "Network", "name": "backend"}]}))
    session.response = _Resp(201, {"id": "dep-1", "generation": 1})

    rc = cli.main(
        ["--user", "ops", "--password", "pw", "create", "--id", "dep-1", "--template", "arena",
         "--namespace", "eu1", "--spec", str(spec), "--ignore", "Workload.*.replicas"]
    )
    assert rc == 0
    assert session.auth == ("ops", "pw")
    method, url, kw = session.calls[0]
    assert (method, url) == ("POST", "http://localhost:8000/deployments")
    assert kw["json"]["desired_spec"] == {"resources": [{"kind": "Network", "name": "backend"}]}
    assert kw["json"]["ignore_fields"] == ["Workload.*.replicas"]
    assert json.loads(capsys.readouterr().out)["id"] == "dep-1"


@pytest.mark.parametrize(
    "argv,method,path",
    [
        (["pause", "dep-1"], "POST", "/deployments/dep-1/pause"),
        (["reconcile", "dep-1"], "POST", "/deployments/dep-1/reconcile"),
        (["delete", "dep-1"], "DELETE", "/deployments/dep-1"),
        (["snapshot", "dep-1"], "GET", "/deployments/dep-1/snapshot"),
        (["decide", "7", "approve"], "POST", "/approvals/7/approve"),
    ],
)
def test_commands_map_to_endpoints(session, argv, method, path):
    assert cli.main(["--api", "http://gsr:9000/"] + argv) == 0
    assert session.calls[0][:2] == (method, "http://gsr:9000" + path)


def test_error_status_gives_nonzero_exit(session, capsys):
    session.response = _Resp(409, {"detail": "generation conflict"})
    assert cli.main(["resume", "dep-1"]) == 1
    assert "generation conflict" in capsys.readouterr().out
