import math

import pytest

from codescope.search.ranking import (DEFAULT_FIELD_WEIGHTS, FIELD_BODY, FIELD_PATH,
                                      FIELD_SYMBOL, BM25FRanking, FieldDocument,
                                      weights_for_intent)


def test_symbol_field_outweighs_body():
    docs = [
        FieldDocument("body.ts", {FIELD_BODY: "call parseConfig here", FIELD_PATH: "body.ts"}),
        FieldDocument("sym.ts", {FIELD_SYMBOL: "parseConfig", FIELD_PATH: "sym.ts"}),
        FieldDocument("none.ts", {FIELD_BODY: "unrelated text", FIELD_PATH: "none.ts"}),
    ]
    ranked = BM25FRanking().rank(docs, ["parseConfig"])
    assert [doc_id for doc_id, _ in ranked][:2] == ["sym.ts", "body.ts"]
    assert dict(ranked)["none.ts"] == 0.0


def test_camel_case_parts_match():
    docs = [FieldDocument("a", {FIELD_SYMBOL: "getUserProfile"}), FieldDocument("b", {})]
    ranked = dict(BM25FRanking().rank(docs, ["profile"]))
    assert ranked["a"] > 0
    assert ranked["b"] == 0.0


def test_korean_tokens_score():
    docs = [
        FieldDocument("ko.ts", {FIELD_BODY: "사용자 검색 기능"}),
        FieldDocument("en.ts", {FIELD_BODY: "user search feature"}),
    ]
    ranked = BM25FRanking().rank(docs, ["검색"])
    assert ranked[0][0] == "ko.ts"
    assert ranked[0][1] > 0
    assert ranked[1] == ("en.ts", 0.0)


def test_ties_keep_input_order():
    docs = [FieldDocument(name, {FIELD_BODY: "same words"}) for name in ("z", "a", "m")]
    ranked = BM25FRanking().rank(docs, ["same"])
    assert [doc_id for doc_id, _ in ranked] == ["z", "a", "m"]


def test_empty_inputs():
    ranking = BM25FRanking()
    assert ranking.rank([], ["x"]) == []
    docs = [FieldDocument("a", {FIELD_BODY: "text"})]
    assert ranking.rank(docs, ["!!!"]) == [("a", 0.0)]


def test_saturation_formula_single_document():
    doc = FieldDocument("a", {FIELD_BODY: "alpha"})
    (_, score), = BM25FRanking(k1=1.2, b=0.75).rank([doc], ["alpha"], {FIELD_BODY: 1.0})
    # one document: idf = ln(0.5 / 1.5 + 1), pseudo tf = 1, so saturation cancels out
    assert score == pytest.approx(math.log(4.0 / 3.0))


def test_fields_missing_from_weights_are_ignored():
    docs = [FieldDocument("a", {"extra": "alpha"}), FieldDocument("b", {FIELD_BODY: "alpha"})]
    ranked = dict(BM25FRanking().rank(docs, ["alpha"]))
    assert ranked["a"] == 0.0
    assert ranked["b"] > 0


def test_weights_for_intent():
    weights = weights_for_intent("file")
    assert weights[FIELD_PATH] == pytest.approx(DEFAULT_FIELD_WEIGHTS[FIELD_PATH] * 2.5)
    assert weights[FIELD_SYMBOL] == DEFAULT_FIELD_WEIGHTS[FIELD_SYMBOL]
    assert weights_for_intent("code") == DEFAULT_FIELD_WEIGHTS
    assert weights_for_intent("symbol") is not DEFAULT_FIELD_WEIGHTS
