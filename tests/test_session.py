import json
import os
import sys
import uuid

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from vera.session import SESSION_KEY, SessionStore, load_or_create_session_id


def test_session_id_is_created_once_and_reused(tmp_path):
    store = SessionStore(str(tmp_path / "nested" / "session.json"))

    first = load_or_create_session_id(store)
    second = load_or_create_session_id(SessionStore(store.path))

    assert first == second
    assert uuid.UUID(first).version == 4
    with open(store.path) as f:
        assert json.load(f) == {SESSION_KEY: first}


def test_existing_keys_are_preserved(tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"other": 1}))
    store = SessionStore(str(path))

    store.set(SESSION_KEY, "abc")

    assert store.get("other") == 1
    assert store.get(SESSION_KEY) == "abc"
    assert not os.path.exists(f"{path}.tmp")


def test_corrupt_store_is_replaced(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{not json")

    session_id = load_or_create_session_id(SessionStore(str(path)))

    assert session_id
    assert json.loads(path.read_text())[SESSION_KEY] == session_id


def test_blank_session_id_is_regenerated(tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps({SESSION_KEY: ""}))

    assert load_or_create_session_id(SessionStore(str(path)))
