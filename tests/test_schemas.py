"""Tests for the payload codec and settings loading in :mod:`schemas`."""

from __future__ import annotations

import json

import pytest

from schemas import (
    InvocationPayload,
    PayloadDecodeError,
    Settings,
    decode_payload,
    encode_payload,
)


@pytest.mark.parametrize(
    "arguments",
    [
        [],
        ["appA"],
        ["appA", "--open", "file.txt"],
        ["", " ", "two words", "line\nbreak", "tab\there"],
        ["C:\\Program Files\\app.exe", "/tmp/ünïcødé ✓", '{"json": [1]}'],
    ],
)
def test_payload_round_trip(arguments):
    encoded = encode_payload(arguments)
    assert encoded.endswith(b"\n")
    assert encoded.count(b"\n") == 1
    assert decode_payload(encoded) == arguments


def test_encoded_payload_is_a_json_document():
    encoded = encode_payload(["a", "b"])
    assert json.loads(encoded) == {"command_line_arguments": ["a", "b"]}


def test_decode_accepts_message_without_terminator():
    assert decode_payload(b'{"command_line_arguments": ["x"]}') == ["x"]


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"\n",
        b"not json\n",
        b"\xff\xfe\xfd",
        b"[]",
        b'{"command_line_arguments": [1, 2]}',
        b'{"command_line_arguments": ["a"], "version": 2}',
        b'{"command_line_arguments": ["a"]',
    ],
)
def test_decode_rejects_malformed_messages(data):
    with pytest.raises(PayloadDecodeError):
        decode_payload(data)


def test_decode_error_is_a_value_error():
    assert issubclass(PayloadDecodeError, ValueError)


def test_payload_model_defaults_to_empty_list():
    assert InvocationPayload().command_line_arguments == []


def test_load_settings_without_file_uses_defaults(tmp_path):
    model = Settings.load_settings(tmp_path / "missing.json")
    assert model.connect_timeout_ms == 3000
    assert model.mutex_prefix == "Mutex"
    assert model.pipe_prefix == "Pipe"
    assert model.lock_dir.is_absolute()


def test_load_settings_reads_user_file(tmp_path):
    settings_file = tmp_path / "settings.json"
    settings_file.write_text(
        json.dumps(
            {
                "connect_timeout_ms": 500,
                "lock_dir": str(tmp_path / "locks"),
            }
        ),
        encoding="utf-8",
    )
    model = Settings.load_settings(settings_file)
    assert model.connect_timeout_ms == 500
    assert model.lock_dir == (tmp_path / "locks").resolve()


def test_load_settings_falls_back_on_invalid_file(tmp_path):
    settings_file = tmp_path / "settings.json"
    settings_file.write_text('{"connect_timeout_ms": "soon"', encoding="utf-8")
    model = Settings.load_settings(settings_file)
    assert model.connect_timeout_ms == 3000


def test_shared_settings_file_cannot_set_an_identity(tmp_path):
    # the user settings file is shared by every application using the library
    settings_file = tmp_path / "settings.json"
    settings_file.write_text(
        json.dumps({"unique_name": "everyone", "read_timeout_ms": 1000}),
        encoding="utf-8",
    )
    model = Settings.load_settings(settings_file)
    assert model.read_timeout_ms == 1000
    assert "unique_name" not in Settings.model_fields
    assert not hasattr(model, "unique_name")
