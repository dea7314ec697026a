import pytest

from codescope.storage.trigram import (ROCKSDICT_AVAILABLE, TrigramIndex, TrigramPostingStore,
                                       TrigramStats, compute_stats, extract_trigram_counts)


def _index() -> TrigramIndex:
    t = TrigramIndex()
    t.add_file("src/auth.py", "def validate_user(name):\n    return check(name)\n")
    t.add_file("src/math.py", "def add(a, b):\n    return a + b\n")
    t.add_file("docs/guide.md", "Users are validated on login.")
    return t


def test_extract_trigram_counts():
    assert extract_trigram_counts("abcd") == {"abc": 1, "bcd": 1}
    assert extract_trigram_counts("Ab") == {"ab": 1}
    assert extract_trigram_counts("") == {}
    counts = extract_trigram_counts("aaaa")
    assert counts == {"aaa": 2}
    # shingles that start or end on a word boundary are skipped
    assert "ab " not in extract_trigram_counts("ab cd")
    assert " cd" not in extract_trigram_counts("ab cd")


def test_compute_stats():
    stats = compute_stats("hello world")
    assert stats.word_count == 2
    assert stats.total_trigrams == sum(extract_trigram_counts("hello world").values())
    assert stats.unique_trigrams <= stats.total_trigrams


def test_search_ranks_matching_file_first():
    t = _index()
    hits = t.search("validate_user")
    assert hits[0][0] == "src/auth.py"
    assert all(score > 0 for _, score in hits)
    assert "src/math.py" not in [p for p, _ in hits]


def test_search_short_term_uses_substring_scan():
    t = _index()
    hits = t.search("ad")
    assert [p for p, _ in hits] == ["src/math.py"]
    assert 0 < hits[0][1] <= 1.0


def test_search_empty_and_unknown():
    t = _index()
    assert t.search("") == []
    assert t.search("zzzzqqq") == []
    assert TrigramIndex().search("anything") == []


def test_equal_scores_break_ties_by_path():
    t = TrigramIndex()
    t.add_file("b.txt", "needle")
    t.add_file("a.txt", "needle")
    assert [p for p, _ in t.search("needle")] == ["a.txt", "b.txt"]


def test_add_replaces_and_remove_forgets():
    t = _index()
    t.add_file("src/math.py", "nothing to see")
    assert "src/math.py" not in [p for p, _ in t.search("return")]
    assert t.remove_file("src/auth.py") is True
    assert t.remove_file("src/auth.py") is False
    assert not t.has_file("src/auth.py")
    assert "src/auth.py" not in [p for p, _ in t.search("validate_user")]
    assert len(t) == 2


def test_stats_serialize_roundtrip():
    stats = TrigramStats(word_count=3, unique_trigrams=7, total_trigrams=9)
    blob = TrigramPostingStore.serialize_stats(stats)
    assert TrigramPostingStore.deserialize_stats(blob) == stats
    assert TrigramPostingStore.deserialize_stats(b"garbage") is None


def test_postings_survive_reopen(tmp_path):
    if not ROCKSDICT_AVAILABLE:
        pytest.skip("No RocksDB backend available for trigram index")
    path = tmp_path / "trigrams.rocksdict"
    t = TrigramIndex(TrigramPostingStore(path))
    t.add_file("src/auth.py", "def validate_user(name): pass")
    t.add_file("src/math.py", "def add(a, b): return a + b")
    assert t.save() > 0
    expected = t.search("validate")
    t.remove_file("src/math.py")
    t.save()
    t.close()

    reopened = TrigramIndex(TrigramPostingStore(path))
    assert reopened.load() == 1
    assert reopened.list_files() == ["src/auth.py"]
    assert reopened.stats("src/auth.py") == compute_stats("def validate_user(name): pass")
    assert [p for p, _ in reopened.search("validate")] == [p for p, _ in expected]
    reopened.close()
