"""Token estimation and term extraction shared across the pipeline.

Token counts use whitespace tokenization everywhere so that chunk budgets,
context budgets and rate-limit reservations agree with each other.
"""

import re

SENTENCE_TERMINATOR = re.compile(r"[.!?](?=\s|$)|[。！？]")
_WORD = re.compile(r"\w+", re.UNICODE)
# Hiragana, katakana, CJK ideographs, hangul
_CJK = re.compile(r"[぀-ヿ㐀-䶿一-鿿가-힯]")


def estimate_tokens(text: str) -> int:
    """Estimate tokens as whitespace-separated words."""
    return len(text.split())


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut ``text`` to at most ``max_tokens`` tokens, preferring a sentence end.

    The cut first keeps the leading ``max_tokens`` whitespace tokens, then backs
    up to the last sentence terminator inside that span when there is one.
    """
    if max_tokens <= 0:
        return ""
    matches = list(re.finditer(r"\S+", text))
    if len(matches) <= max_tokens:
        return text.strip()

    span = text[: matches[max_tokens - 1].end()]
    last_end = None
    for match in SENTENCE_TERMINATOR.finditer(span):
        last_end = match.end()
    if last_end:
        return span[:last_end].strip()
    return span.strip()


def extract_terms(text: str) -> list[str]:
    """Lowercased word terms; CJK runs contribute one term per character."""
    terms = []
    for word in _WORD.findall(text.lower()):
        if _CJK.search(word):
            terms.extend(ch for ch in word if not ch.isspace())
        else:
            terms.append(word)
    return terms


def term_overlap(query: str, text: str) -> float:
    """Share of distinct query terms that appear in ``text``, in [0, 1]."""
    query_terms = set(extract_terms(query))
    if not query_terms:
        return 0.0
    text_terms = set(extract_terms(text))
    return len(query_terms & text_terms) / len(query_terms)
