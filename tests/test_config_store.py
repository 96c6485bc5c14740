import stat

import pytest

from conftest import write_conf
from nodebox.config_store import (
    ConfigEntry,
    ConfigStore,
    merge_entries,
    parse_config,
    read_json,
    render_config,
    write_json,
)
from nodebox.errors import ConfigValidationError
from nodebox.validators import BITCOIN_CONFIG_KEYS


@pytest.fixture
def conf(tmp_path):
    return tmp_path / "bitcoin.conf"


@pytest.fixture
def store(conf):
    return ConfigStore(conf, BITCOIN_CONFIG_KEYS)


def test_merge_preserves_credentials(conf, store):
    write_conf(conf, "rpcuser=alice\nrpcpassword=secret\n")

    result = store.apply_update({"maxconnections": "40"})

    assert result == {"rpcuser": "alice", "rpcpassword": "secret", "maxconnections": "40"}
    assert conf.read_text() == "rpcuser=alice\nrpcpassword=secret\nmaxconnections=40\n"


def test_disallowed_key_names_key_and_leaves_file_unchanged(conf, store):
    original = b"rpcuser=alice\nrpcpassword=secret\n"
    write_conf(conf, original)

    with pytest.raises(ConfigValidationError) as excinfo:
        store.apply_update({"rpcpassword": "x"})

    assert excinfo.value.key == "rpcpassword"
    assert excinfo.value.reason == "not allowed"
    assert conf.read_bytes() == original


def test_one_bad_value_rejects_whole_batch(conf, store):
    original = b"# tuned\ndbcache=300\nrpcuser=alice\n"
    write_conf(conf, original)

    with pytest.raises(ConfigValidationError) as excinfo:
        store.apply_update({"dbcache": "450", "prune": "550;rm -rf /"})

    assert excinfo.value.key == "prune"
    assert conf.read_bytes() == original


def test_rejected_batch_does_not_create_missing_file(conf, store):
    with pytest.raises(ConfigValidationError):
        store.apply_update({"txindex": "1"})
    assert not conf.exists()


def test_update_is_idempotent(conf, store):
    write_conf(conf, "rpcuser=alice\ndbcache=100\naddnode=a.example\naddnode=b.example\n")
    batch = {"dbcache": "450", "prune": "550"}

    store.apply_update(batch)
    first = conf.read_bytes()
    store.apply_update(batch)

    assert conf.read_bytes() == first
    assert first == b"rpcuser=alice\ndbcache=450\naddnode=a.example\naddnode=b.example\nprune=550\n"


def test_empty_value_unsets_key(conf, store):
    write_conf(conf, "prune=550\nrpcuser=alice\n")

    result = store.apply_update({"prune": ""})

    assert "prune" not in result
    assert conf.read_text() == "rpcuser=alice\n"


def test_integer_values_are_written_as_text(conf, store):
    store.apply_update({"maxconnections": 40})
    assert conf.read_text() == "maxconnections=40\n"


def test_written_file_is_owner_only(conf, store):
    write_conf(conf, "rpcuser=alice\n")
    conf.chmod(0o644)

    store.apply_update({"dbcache": "450"})

    assert stat.S_IMODE(conf.stat().st_mode) == 0o600


def test_unparseable_file_loads_as_empty(conf, store):
    write_conf(conf, b"\xff\xfe\x00garbage")
    assert store.load() == {}


def test_missing_file_loads_as_empty(store):
    assert store.load() == {}
    assert store.allowed_values() == {}


def test_unrecognised_lines_are_kept_verbatim():
    text = "# node\n\nnot a pair\n=novalue\nrpcuser = alice\nrpcauth=a=b\n"
    entries = parse_config(text)
    assert [entry for entry in entries if entry.key is not None] == [
        ConfigEntry("rpcuser", "alice"),
        ConfigEntry("rpcauth", "a=b"),
    ]
    assert render_config(entries) == text


def test_section_stays_scoped_after_update(conf, store):
    write_conf(conf, "rpcuser=alice\n\n[test]\nrpcport=18332\ndbcache=100\n")

    store.apply_update({"dbcache": "450"})

    assert conf.read_text() == "rpcuser=alice\n\ndbcache=450\n[test]\nrpcport=18332\ndbcache=100\n"
    assert store.load() == {"rpcuser": "alice", "dbcache": "450"}


def test_update_keeps_undecodable_bytes_and_credentials(conf, store):
    write_conf(conf, b"# caf\xe9 node\nrpcuser=alice\nrpcpassword=secret\n")

    store.apply_update({"maxconnections": "40"})

    assert conf.read_bytes() == b"# caf\xe9 node\nrpcuser=alice\nrpcpassword=secret\nmaxconnections=40\n"


def test_update_refuses_to_replace_unreadable_file(tmp_path):
    directory = tmp_path / "bitcoin.conf"
    directory.mkdir()
    store = ConfigStore(directory, BITCOIN_CONFIG_KEYS)

    assert store.load() == {}
    with pytest.raises(OSError):
        store.apply_update({"dbcache": "450"})
    assert directory.is_dir()


def test_merge_collapses_repeated_whitelisted_key():
    entries = [ConfigEntry("dbcache", "1"), ConfigEntry("rpcuser", "u"), ConfigEntry("dbcache", "2")]
    merged = merge_entries(entries, {"dbcache": "3", "maxconnections": "8"})
    assert merged == [ConfigEntry("dbcache", "3"), ConfigEntry("rpcuser", "u"), ConfigEntry("maxconnections", "8")]


def test_allowed_values_hide_credentials(conf, store):
    write_conf(conf, "rpcuser=alice\nrpcpassword=secret\ndbcache=450\n")
    assert store.allowed_values() == {"dbcache": "450"}


def test_audit_reports_bad_values_on_disk(conf, store):
    write_conf(conf, "dbcache=450\nprune=$(reboot)\nrpcpassword=$ecret\n")
    assert store.audit() == [{"key": "prune", "reason": "may only contain letters, digits, '-', '.' and '_'"}]


def test_json_helpers_fall_back_and_write_private(tmp_path):
    path = tmp_path / "relays.json"
    assert read_json(path, ["wss://default"]) == ["wss://default"]
    path.write_text("{not json")
    assert read_json(path, {}) == {}

    write_json(path, {"theme": "dark"})

    assert read_json(path, {}) == {"theme": "dark"}
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
