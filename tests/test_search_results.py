from codescope.search.results import (ELLIPSIS, ResultOptions, ResultProcessor, SearchResult,
                                      clamp_snippet_length, normalize_extension)


def _results():
    return [
        SearchResult(path="src/a.ts", line=1, preview="const a = 1;", score=3.0),
        SearchResult(path="src/b.py", line=4, preview="const a = 1;", score=2.5),
        SearchResult(path="src/a.ts", line=9, preview="x" * 100, score=2.0),
        SearchResult(path="docs/c.md", line=2, preview="", score=1.0),
    ]


def test_normalize_extension():
    assert normalize_extension("*.TS") == "ts"
    assert normalize_extension(".js") == "js"
    assert normalize_extension(" py ") == "py"


def test_clamp_snippet_length():
    assert clamp_snippet_length(None) is None
    assert clamp_snippet_length(0) == 0
    assert clamp_snippet_length(3) == 16
    assert clamp_snippet_length(10_000) == 2000
    assert clamp_snippet_length(40) == 40


def test_filter_by_type():
    out = ResultProcessor().process(_results(), ResultOptions(file_types=["*.TS", ".md"]))
    assert [r.path for r in out] == ["src/a.ts", "src/a.ts", "docs/c.md"]


def test_dedup_keeps_first_occurrence():
    out = ResultProcessor().process(_results(), ResultOptions(deduplicate_by_content=True))
    assert [(r.path, r.line) for r in out] == [("src/a.ts", 1), ("src/a.ts", 9), ("docs/c.md", 2)]


def test_truncate_with_ellipsis():
    out = ResultProcessor().process(_results(), ResultOptions(snippet_length=20))
    long_one = out[2]
    assert len(long_one.preview) == 20
    assert long_one.preview.endswith(ELLIPSIS)
    assert out[0].preview == "const a = 1;"


def test_truncate_zero_clears_preview():
    out = ResultProcessor().process(_results(), ResultOptions(snippet_length=0))
    assert all(r.preview == "" for r in out)


def test_group_by_file():
    out = ResultProcessor().process(_results(), ResultOptions(group_by_file=True))
    assert [r.path for r in out] == ["src/a.ts", "src/b.py", "docs/c.md"]
    grouped = out[0]
    assert grouped.match_count == 2
    assert [m.line for m in grouped.grouped_matches] == [1, 9]
    data = grouped.to_dict()
    assert len(data["grouped_matches"]) == 2
    assert "grouped_matches" not in data["grouped_matches"][0]


def test_stage_order_filter_then_dedup():
    opts = ResultOptions(file_types=["py"], deduplicate_by_content=True)
    out = ResultProcessor().process(_results(), opts)
    # the .ts duplicate is filtered out first, so the .py copy survives dedup
    assert [r.path for r in out] == ["src/b.py"]


def test_mixed_extension_spellings():
    results = [
        SearchResult(path="test.ts", line=1, preview="a", score=1.0),
        SearchResult(path="test.js", line=1, preview="b", score=1.0),
        SearchResult(path="readme.md", line=1, preview="c", score=1.0),
    ]
    out = ResultProcessor().process(results, ResultOptions(file_types=["ts", "*.js"]))
    assert [r.path for r in out] == ["test.ts", "test.js"]
