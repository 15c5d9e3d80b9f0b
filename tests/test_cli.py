import json

import pytest

import cli


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        return json.dumps(self._body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeRequests:
    """Replays queued responses and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _reply(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self._reply("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._reply("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self._reply("PUT", url, **kwargs)


@pytest.fixture
def fake(monkeypatch):
    def install(*responses):
        f = FakeRequests(*responses)
        monkeypatch.setattr(cli, "requests", f)
        monkeypatch.setattr(cli.time, "sleep", lambda s: None)
        return f

    return install


def test_fleet_prints_and_succeeds(fake, capsys):
    f = fake(FakeResponse(200, {"name": "web", "serving": 6}))
    assert cli.main(["--api", "http://ctl:8000/", "fleet"]) == 0
    assert f.calls[0][:2] == ("GET", "http://ctl:8000/fleet")
    assert json.loads(capsys.readouterr().out)["serving"] == 6


@pytest.mark.parametrize(
    "status,body,code",
    [
        (409, {"result": "conflict", "detail": "busy"}, 3),
        (422, {"result": "invalid-policy", "detail": "bad"}, 4),
        (422, {"detail": [{"msg": "field required"}]}, 4),
        (404, {"result": "not-found", "detail": "missing"}, 5),
        (500, None, 1),
    ],
)
def test_exit_codes_follow_result(fake, status, body, code):
    fake(FakeResponse(status, body))
    assert cli.main(["describe", "u1"]) == code


def test_update_sends_spec_and_policy(fake):
    f = fake(FakeResponse(202, {"id": "u1", "state": "in_progress"}))
    rc = cli.main(["update", "--image", "web:v2", "--zone", "eu-west-1a", "--max-batch-size", "2"])
    assert rc == 0
    method, url, kwargs = f.calls[0]
    assert (method, url) == ("POST", "http://localhost:8000/updates")
    assert kwargs["json"]["image"] == "web:v2"
    assert kwargs["json"]["zones"] == ["eu-west-1a"]
    assert kwargs["json"]["policy"]["max_batch_size"] == 2
    assert kwargs["json"]["policy"]["min_in_service"] == 3


def test_update_wait_polls_until_completed(fake):
    f = fake(
        FakeResponse(202, {"id": "u1", "state": "in_progress"}),
        FakeResponse(200, {"id": "u1", "state": "in_progress"}),
        FakeResponse(200, {"id": "u1", "state": "completed", "result": "success"}),
    )
    assert cli.main(["update", "--image", "web:v2", "--wait"]) == 0
    assert len(f.calls) == 3


def test_wait_reports_failure_result(fake):
    fake(FakeResponse(200, {"id": "u1", "state": "failed", "result": "timeout"}))
    assert cli.main(["wait", "u1"]) == 6


def test_policy_merges_changes_into_current(fake):
    current = {"min": 6, "max": 15, "adjustment": 1, "cooldown_s": 120.0, "threshold": 60.0,
               "evaluation_periods": 1, "period_s": 60.0}
    f = fake(FakeResponse(200, current), FakeResponse(200, {**current, "max": 20}))
    assert cli.main(["policy", "--max", "20"]) == 0
    method, _, kwargs = f.calls[1]
    assert method == "PUT"
    assert kwargs["json"] == {**current, "max": 20}


def test_events_filters_by_update(fake):
    f = fake(FakeResponse(200, []))
    assert cli.main(["events", "--limit", "5", "--update-id", "u1"]) == 0
    assert f.calls[0][2]["params"] == {"limit": 5, "update_id": "u1"}
