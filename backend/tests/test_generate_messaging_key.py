from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest

SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "generate_messaging_key.py"


@pytest.fixture(scope="module")
def keygen():
    spec = importlib.util.spec_from_file_location("generate_messaging_key", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_generated_key_is_accepted_by_the_server(keygen):
    from app.core.security import MessagingKey

    key = keygen.generate_key("prod", 32)
    parsed = MessagingKey.parse(key)
    assert parsed.name == "prod"
    assert len(parsed.secret) >= 40


def test_invalid_arguments_are_rejected(keygen):
    with pytest.raises(ValueError):
        keygen.generate_key("prod", 0)
    with pytest.raises(ValueError):
        keygen.generate_key("bad:name", 32)


def test_env_file_entry_is_replaced(keygen, tmp_path, capsys):
    env_file = tmp_path / ".env"
    env_file.write_text("DEBUG=true\nMESSAGING_API_KEY=old:value\n", encoding="utf-8")

    assert keygen.main(["--name", "relaychat", "--update-env", str(env_file), "--silent"]) == 0

    lines = env_file.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "DEBUG=true"
    assert len([line for line in lines if line.startswith("MESSAGING_API_KEY=")]) == 1
    assert lines[1].startswith("MESSAGING_API_KEY=relaychat:")
    assert capsys.readouterr().out == ""
