from __future__ import annotations

import base64

import pytest

from routerfleet import cli


def test_generate_key_prints_usable_key(capsys: pytest.CaptureFixture[str]) -> None:
    args = cli.build_parser().parse_args(["generate-key"])

    assert args.func(args) == 0

    key = capsys.readouterr().out.strip()
    assert len(base64.b64decode(key, validate=True)) == 32


def test_generate_key_export_format(capsys: pytest.CaptureFixture[str]) -> None:
    args = cli.build_parser().parse_args(["generate-key", "--export"])
    args.func(args)

    assert capsys.readouterr().out.startswith("CREDENTIAL_KEY=")


def test_nodes_add_posts_payload(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    calls = []

    def _fake_request(**kwargs):
        calls.append(kwargs)
        return {"id": "n1", "name": kwargs["json_body"]["name"]}

    monkeypatch.setattr(cli, "_api_request", _fake_request)
    args = cli.build_parser().parse_args(
        [
            "--actor",
            "alice",
            "nodes",
            "add",
            "--name",
            "core-1",
            "--host",
            "192.168.88.1",
            "--username",
            "admin",
            "--password",
            "pw",
            "--no-tls",
        ]
    )

    assert args.func(args) == 0
    [call] = calls
    assert call["path"] == "/nodes"
    assert call["method"] == "POST"
    assert call["actor"] == "alice"
    assert call["json_body"]["use_tls"] is False
    assert call["json_body"]["port"] == 443
    assert '"core-1"' in capsys.readouterr().out


def test_nodes_add_requires_password(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ROUTERFLEET_NODE_PASSWORD", raising=False)
    args = cli.build_parser().parse_args(
        ["nodes", "add", "--name", "a", "--host", "h", "--username", "u"]
    )

    with pytest.raises(RuntimeError):
        args.func(args)


def test_health_exit_code_reflects_unhealthy_nodes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "_api_request", lambda **kwargs: {"total": 2, "healthy": 1, "unhealthy": 1})
    args = cli.build_parser().parse_args(["health", "--check"])

    assert args.func(args) == 2
