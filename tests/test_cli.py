from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
import yaml

import unified_gateway.cli as gateway_cli
from unified_gateway.cli import build_parser, main
from unified_gateway.settings import get_settings


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: Any, tmp_path: Path) -> None:
    monkeypatch.setenv("GATEWAY_CONFIG_PATH", str(tmp_path / "config.json"))
    monkeypatch.setenv("GATEWAY_MODELS_CACHE_PATH", str(tmp_path / "models.json"))
    get_settings.cache_clear()


def _config(tmp_path: Path) -> dict[str, Any]:
    return json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))


def test_endpoints_add_list_select_remove(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert (
        main(
            [
                "endpoints",
                "add",
                "--id",
                "g",
                "--name",
                "Groq",
                "--base-url",
                "https://api.groq.test/openai/v1",
                "--api-key",
                "gk",
            ]
        )
        == 0
    )
    ollama = ["--id", "o", "--name", "Ollama", "--base-url", "http://o"]
    assert main(["endpoints", "add", *ollama]) == 0
    assert main(["endpoints", "select", "o"]) == 0
    capsys.readouterr()

    assert main(["endpoints", "list"]) == 0
    listing = yaml.safe_load(capsys.readouterr().out)
    assert listing["currentEndpointId"] == "o"
    assert [item["name"] for item in listing["endpoints"]] == ["Groq", "Ollama"]
    assert "gk" not in json.dumps(listing)

    assert main(["endpoints", "remove", "o"]) == 0
    config = _config(tmp_path)
    assert [item["id"] for item in config["endpoints"]] == ["g"]
    assert config["currentEndpointId"] == "g"


def test_endpoints_add_updates_existing_without_touching_secret(tmp_path: Path) -> None:
    main(
        [
            "endpoints",
            "add",
            "--id",
            "g",
            "--name",
            "Groq",
            "--base-url",
            "http://g",
            "--api-key",
            "gk",
        ]
    )

    assert main(["endpoints", "add", "--id", "g", "--name", "Groq Cloud"]) == 0

    endpoint = _config(tmp_path)["endpoints"][0]
    assert endpoint["name"] == "Groq Cloud"
    assert endpoint["apiKey"] == "gk"


def test_endpoints_add_without_required_fields_fails(
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main(["endpoints", "add", "--name", "Nameless"]) == 2
    assert "error:" in capsys.readouterr().err


def test_key_show_prints_generated_key(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["key", "show"]) == 1

    main(["endpoints", "add", "--name", "A", "--base-url", "http://a"])
    capsys.readouterr()

    assert main(["key", "show"]) == 0
    key = capsys.readouterr().out.strip()
    assert key.startswith("ag-")
    assert _config(tmp_path)["unifiedApiKey"] == key


def test_models_refresh_uses_upstream_client(
    monkeypatch: Any, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    base_url = "http://a.test/v1"
    main(["endpoints", "add", "--id", "a", "--name", "A", "--base-url", base_url])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"id": "m1"}, {"id": "tts-1"}]})

    monkeypatch.setattr(
        gateway_cli,
        "build_upstream_client",
        lambda settings: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    capsys.readouterr()

    assert main(["models", "refresh"]) == 0

    assert yaml.safe_load(capsys.readouterr().out) == {"results": {"A": "Success"}}
    cache = json.loads((tmp_path / "models.json").read_text(encoding="utf-8"))
    assert cache == {"a": [{"id": "m1"}]}


def test_config_flag_overrides_settings_path(tmp_path: Path) -> None:
    other = tmp_path / "other.yaml"

    main(
        [
            "endpoints",
            "add",
            "--config",
            str(other),
            "--name",
            "A",
            "--base-url",
            "http://a",
        ]
    )

    document = yaml.safe_load(other.read_text(encoding="utf-8"))
    assert document["endpoints"][0]["name"] == "A"
    assert not (tmp_path / "config.json").exists()


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
