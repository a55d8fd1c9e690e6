import json

import pytest

from config import config
import main
from url_validator import URLValidator


class FailingResolver:
    async def resolve(self, host, port=0, family=0):
        raise OSError("no network in tests")


def test_check_url_prints_verdict_and_exit_status(monkeypatch, capsys):
    monkeypatch.setattr(main, "get_validator", lambda: URLValidator(resolver=FailingResolver()))

    with pytest.raises(SystemExit) as blocked:
        main.main(["check-url", "http://localhost/", "--policy", "proxy"])
    assert blocked.value.code == 1
    assert json.loads(capsys.readouterr().out) == {
        "url": "http://localhost/", "policy": "proxy", "safe": False, "reason": "Blocked hostname",
    }

    with pytest.raises(SystemExit) as allowed:
        main.main(["check-url", "http://10.0.0.2/rss"])
    assert allowed.value.code == 0
    assert json.loads(capsys.readouterr().out) == {
        "url": "http://10.0.0.2/rss", "policy": "feed", "safe": True, "warning": "Private IP address",
    }


def test_sync_with_no_feeds_emits_complete_line(monkeypatch, capsys, tmp_path):
    monkeypatch.setattr(config, "DATABASE_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setattr(config, "FEED_SOURCES", {})

    with pytest.raises(SystemExit) as exc:
        main.main(["sync"])

    assert exc.value.code == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert [json.loads(line) for line in lines] == [
        {"type": "complete", "synced": 0, "failed": 0, "total": 0},
    ]


def test_parser_requires_mode():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args([])
