"""
Splitting of long replies into provider-sized segments.

Text is packed greedily by paragraph, then sentence, then word. When more
than one segment results, each gets a "\\n\\n(i/n)" marker; room for the marker
is reserved up front so no marked segment exceeds the limit.
"""

import re
from typing import List

DEFAULT_LIMIT = 4096

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+$")


def _marker(index: int, total: int) -> str:
    return f"\n\n({index}/{total})"


def _sentences(paragraph: str) -> List[str]:
    found = [s.strip() for s in _SENTENCE_RE.findall(paragraph) if s.strip()]
    return found or [paragraph.strip()]


def _words(text: str, budget: int) -> List[str]:
    """Word-packed chunks; a single word longer than budget is hard-cut."""
    chunks: List[str] = []
    current = ""
    for word in text.split():
        while len(word) > budget:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:budget])
            word = word[budget:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) > budget:
            chunks.append(current)
            current = word
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def _pack(pieces: List[str], separator: str, budget: int) -> List[str]:
    segments: List[str] = []
    current = ""
    for piece in pieces:
        candidate = f"{current}{separator}{piece}" if current else piece
        if len(candidate) <= budget:
            current = candidate
            continue
        if current:
            segments.append(current)
        current = piece
    if current:
        segments.append(current)
    return segments


def _split(text: str, budget: int) -> List[str]:
    pieces: List[str] = []
    for paragraph in (p.strip() for p in _PARAGRAPH_RE.split(text)):
        if not paragraph:
            continue
        if len(paragraph) <= budget:
            pieces.append(paragraph)
            continue
        sentence_pieces: List[str] = []
        for sentence in _sentences(paragraph):
            if len(sentence) <= budget:
                sentence_pieces.append(sentence)
            else:
                sentence_pieces.extend(_words(sentence, budget))
        # sentences of one paragraph are rejoined with a space, paragraphs with a blank line
        pieces.extend(_pack(sentence_pieces, " ", budget))
    return _pack(pieces, "\n\n", budget)


def split_message(text: str, limit: int = DEFAULT_LIMIT) -> List[str]:
    """
    Split text into segments of at most limit characters.

    Returns:
        A single unmarked segment when text fits, otherwise marked segments
        in order. Empty text gives an empty list.
    """
    text = (text or "").strip()
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    # Reserve room for the widest marker; widen the reservation if the count grows
    reserve = len(_marker(9, 9))
    while True:
        budget = limit - reserve
        if budget <= 0:
            raise ValueError(f"Limit {limit} is too small to split messages")
        segments = _split(text, budget)
        needed = len(_marker(len(segments), len(segments)))
        if needed <= reserve:
            break
        reserve = needed

    total = len(segments)
    if total == 1:
        return segments
    return [f"{segment}{_marker(i, total)}" for i, segment in enumerate(segments, start=1)]
