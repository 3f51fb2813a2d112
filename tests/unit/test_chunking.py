from __future__ import annotations

import pytest

from callsight.chunking import chunk_transcript, split_sentences
from callsight.pii import redact


def test_split_sentences_keeps_unterminated_tail() -> None:
    assert split_sentences("One. Two! trailing words") == ["One. ", "Two! ", "trailing words"]


def test_chunking_is_deterministic() -> None:
    text = " ".join(f"Sentence number {i} talks about ROI." for i in range(400))
    first = chunk_transcript(text, target_chars=500, overlap_chars=50)
    second = chunk_transcript(text, target_chars=500, overlap_chars=50)
    assert first == second
    assert [chunk.index for chunk in first] == list(range(len(first)))


def test_short_text_is_single_chunk() -> None:
    chunks = chunk_transcript("  Just one line without a stop  ")
    assert len(chunks) == 1
    assert chunks[0].text == "Just one line without a stop"


def test_blank_text_yields_no_chunks() -> None:
    assert chunk_transcript("   \n ") == []


def test_invalid_parameters_rejected() -> None:
    with pytest.raises(ValueError):
        chunk_transcript("text", target_chars=0)
    with pytest.raises(ValueError):
        chunk_transcript("text", target_chars=100, overlap_chars=100)


def test_punctuation_free_text_is_fully_covered() -> None:
    words = [f"w{i}" for i in range(20000)]
    text = " ".join(words)
    chunks = chunk_transcript(text, target_chars=1500, overlap_chars=200)

    assert len(chunks) > 1
    assert all(len(chunk.text) <= 1500 + 200 for chunk in chunks)
    seen = set()
    for chunk in chunks:
        seen.update(chunk.text.split())
    assert set(words) <= seen
    assert sum(len(chunk.text) for chunk in chunks) >= 0.8 * len(text)


def test_consecutive_chunks_overlap() -> None:
    text = " ".join(f"This is sentence {i}." for i in range(200))
    chunks = chunk_transcript(text, target_chars=300, overlap_chars=40)
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.text[-20:] in current.text


def test_dotted_tokens_stay_inside_one_sentence() -> None:
    sentences = split_sentences("Reach her at jane.doe@acme.com today. Host 192.168.10.20 is up. Pi is 3.14.")
    assert sentences == [
        "Reach her at jane.doe@acme.com today. ",
        "Host 192.168.10.20 is up. ",
        "Pi is 3.14.",
    ]


@pytest.mark.parametrize("padding", range(0, 120, 3))
def test_chunk_boundaries_never_leave_raw_pii_fragments(padding: int) -> None:
    text = (
        "We talked about onboarding"
        + " ok" * padding
        + ". Reach her at jane.doe@acme.com today. The staging host is 192.168.10.20 for now."
        + " Pricing came up again near the end of the call."
    )
    chunks = chunk_transcript(text, target_chars=80, overlap_chars=20)

    assert len(chunks) > 1
    for chunk in chunks:
        redacted = redact(chunk.text).redacted_text
        for fragment in ("jane", "acme", "192.168", "10.20"):
            assert fragment not in redacted
