import pytest
from icrepl.icrepl_serialize import serialize, deserialize, detect_format, format_for_path

def test_json_roundtrip():
    value = {"a": 1, "b": [1, 2, "x"], "c": {"d": True}}
    s = serialize(value, fmt="json")
    out = deserialize(s)  # JSON is sniffed from leading "{"
    assert out == value

def test_yaml_roundtrip_content_type():
    value = {"a": 1, "b": ["x", "y"], "c": {"d": 2}}
    s = serialize(value, fmt="yaml")
    out = deserialize(s, content_type="application/x-yaml")
    assert out == value

def test_yaml_with_json_content_type_fallback():
    # YAML payload mislabeled as JSON should still load via fallback to YAML
    yaml_text = "a: 1\nb: [x, y]\n"
    out = deserialize(yaml_text, content_type="application/json")
    assert out == {"a": 1, "b": ["x", "y"]}

def test_toml_is_read_only():
    out = deserialize('replica = "http://localhost:4943"\n[aliases]\nledger = "aaaaa-aa"\n', fmt="toml")
    assert out == {"replica": "http://localhost:4943", "aliases": {"ledger": "aaaaa-aa"}}
    with pytest.raises(RuntimeError):
        serialize(out, fmt="toml")

def test_cbor_envelopes_carry_the_self_describe_tag():
    value = {"content": {"request_type": "query", "arg": b"DIDL\x00\x00", "ingress_expiry": 1}}
    data = serialize(value, fmt="cbor")
    assert isinstance(data, bytes)
    assert data[:3] == b"\xd9\xd9\xf7"
    assert deserialize(data, fmt="cbor") == value
    assert deserialize(data, content_type="application/cbor") == value
    assert deserialize(b"", fmt="cbor") is None

def test_malformed_cbor_raises():
    with pytest.raises(ValueError, match="malformed CBOR"):
        deserialize(b"\xff\xff", fmt="cbor")

@pytest.mark.parametrize(
    "ct,expected",
    [
        ("application/json", "json"),
        ("application/x-yaml", "yaml"),
        ("application/yaml", "yaml"),
        ("application/toml", "toml"),
        ("application/cbor", "cbor"),
        ("text/plain", None),
    ],
)
def test_detect_format_from_content_type(ct, expected):
    assert detect_format(ct) == expected

@pytest.mark.parametrize(
    "path,expected",
    [
        ("icrepl.json", "json"),
        ("conf/icrepl.YAML", "yaml"),
        ("icrepl.yml", "yaml"),
        ("icrepl.toml", "toml"),
        ("messages.txt", None),
    ],
)
def test_format_for_path(path, expected):
    assert format_for_path(path) == expected

def test_deserialize_bytes_with_charset_yaml():
    data = "a: 1\n".encode("utf-8")
    out = deserialize(data, content_type="application/x-yaml; charset=utf-8")
    assert out == {"a": 1}

def test_deserialize_unknown_returns_text():
    txt = "plain text"
    out = deserialize(txt, content_type="text/plain")
    assert out == "plain text"

def test_unsupported_serialization_format():
    with pytest.raises(ValueError):
        serialize({"a": 1}, fmt="xml")

def test_cbor_decodes_to_plain_containers():
    data = serialize({"paths": [[b"request_status", b"\x01"]], "content": {"a": [1, 2]}}, fmt="cbor")
    out = deserialize(data, fmt="cbor")
    assert type(out) is dict
    assert type(out["content"]) is dict
    assert type(out["paths"]) is list and type(out["paths"][0]) is list
    assert out["paths"] == [[b"request_status", b"\x01"]]
