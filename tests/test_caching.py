import pytest

from engines.caching import SessionDraftCache


def test_save_load_and_clear(tmp_path):
    cache = SessionDraftCache(tmp_path / "drafts")
    assert cache.load("abc") is None

    cache.save("abc", {"sessionId": "abc", "answers": {"q1": "a"}})
    cache.save("abc", {"sessionId": "abc", "answers": {"q1": "b"}})
    assert cache.load("abc") == {"sessionId": "abc", "answers": {"q1": "b"}}
    assert cache.session_ids() == ["abc"]

    assert cache.clear("abc")
    assert not cache.clear("abc")
    assert cache.load("abc") is None


def test_session_ids_are_sanitised(tmp_path):
    cache = SessionDraftCache(tmp_path)
    cache.save("../evil/id", {"x": 1})
    assert (tmp_path / "session_evilid.json").exists()
    assert cache.load("../evil/id") == {"x": 1}
    with pytest.raises(ValueError):
        cache.save("../..", {})


def test_unreadable_draft_is_ignored(tmp_path):
    cache = SessionDraftCache(tmp_path)
    (tmp_path / "session_broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "session_list.json").write_text("[1, 2]", encoding="utf-8")
    assert cache.load("broken") is None
    assert cache.load("list") is None
    assert cache.session_ids() == ["broken", "list"]


def test_no_temp_files_left_behind(tmp_path):
    cache = SessionDraftCache(tmp_path)
    cache.save("s1", {"a": 1})
    assert sorted(p.name for p in tmp_path.iterdir()) == ["session_s1.json"]
