from codescope.search.candidates import (SOURCE_FALLBACK, SOURCE_FILENAME, SOURCE_SYMBOL,
                                         SOURCE_TRIGRAM, CandidateCollector)
from codescope.storage.trigram import TrigramIndex


class _SymbolNames:
    def __init__(self, pairs):
        self.pairs = pairs

    def symbol_names(self):
        return list(self.pairs)


def _trigrams() -> TrigramIndex:
    t = TrigramIndex()
    t.add_file("src/parser.py", "class Tokenizer: pass")
    t.add_file("src/lexer.py", "def scan(source): return tokens")
    t.add_file("src/util.py", "def helper(): return 1")
    return t


def test_filename_and_symbol_matches_are_tagged():
    store = _SymbolNames([("src/util.py", "ParserHelper")])
    collector = CandidateCollector(_trigrams(), store, min_candidates=0)
    result = collector.collect(["parser"])
    assert result.paths[0] == "src/parser.py"
    assert SOURCE_FILENAME in result.sources["src/parser.py"]
    assert SOURCE_SYMBOL in result.sources["src/util.py"]
    assert not result.fallback_used


def test_trigram_hits_carry_scores():
    collector = CandidateCollector(_trigrams(), min_candidates=0)
    result = collector.collect(["tokens"])
    assert "src/lexer.py" in result
    assert SOURCE_TRIGRAM in result.sources["src/lexer.py"]
    assert result.trigram_scores["src/lexer.py"] > 0


def test_filename_matches_any_term():
    collector = CandidateCollector(_trigrams(), min_candidates=0)
    result = collector.collect(["LEXER", "nothing"])
    assert SOURCE_FILENAME in result.sources["src/lexer.py"]


def test_fallback_tops_up_sparse_sets():
    collector = CandidateCollector(_trigrams(), min_candidates=20, fallback_limit=2)
    result = collector.collect(["zzzz"])
    assert result.fallback_used
    assert result.paths == ["src/lexer.py", "src/parser.py"]
    assert all(result.sources[p] == {SOURCE_FALLBACK} for p in result.paths)


def test_empty_terms_only_fall_back():
    collector = CandidateCollector(_trigrams(), min_candidates=1)
    result = collector.collect(["   "])
    assert result.fallback_used
    assert len(result) == 3
