from __future__ import annotations

import re

import pytest

from lexichat.services.response_pipeline import (
    RawAnswer,
    finalize_response,
    has_citation_markers,
    inject_citations,
    is_response_too_short,
    sanitize,
    share_text,
)
from lexichat.services.sources import Source


def _sources(count: int) -> list[Source]:
    return [Source(title=f"Source {i}", url=f"https://example{i}.org/page") for i in range(1, count + 1)]


# ----------------------------------------------------------------------
# sanitize


def test_sanitize_removes_sources_trailer() -> None:
    assert sanitize("Body text.\n\nSources:\n[1] https://a.com", False) == "Body text."


def test_sanitize_removes_singular_heading_trailer() -> None:
    text = "First point.\nSecond point.\n\nsource\n1. https://a.com"
    assert sanitize(text) == "First point.\nSecond point."


def test_sanitize_truncates_at_inline_sources_word() -> None:
    text = "The statute applies here. Sources: Cornell LII and Justia."
    assert sanitize(text) == "The statute applies here."


def test_sanitize_keeps_words_that_merely_contain_sources() -> None:
    text = "Legal resources are plentiful. Check the open-source toolkit."
    assert sanitize(text) == text


def test_sanitize_strips_url_placeholders_and_labels() -> None:
    text = "See the ruling (URL unavailable) and the code URL:   https://law.example.gov today."
    assert sanitize(text) == "See the ruling and the code https://law.example.gov today."


def test_sanitize_collapses_spaces_and_newlines() -> None:
    text = "  One    two.\n\n\n\n\nThree  four.  "
    assert sanitize(text) == "One two.\n\nThree four."


@pytest.mark.parametrize(
    "text",
    [
        "",
        "Body text.\n\nSources:\n[1] https://a.com",
        "Intro (URL unavailable)\n\n\n\nMore   text URL: x",
        "Mid-paragraph sources: trailing stuff",
        "sources\nsources\nsources",
        "Plain answer without anything to strip.",
        "A \n\n\n\n\n\n\n B",
    ],
)
def test_sanitize_is_idempotent(text: str) -> None:
    once = sanitize(text, False)
    assert sanitize(once, False) == once
    assert sanitize(once, True) == sanitize(text, True)


def test_sanitize_never_leaves_three_newlines() -> None:
    result = sanitize("a\n\n\n\n\n\n\nb\n\n\nc")
    assert "\n\n\n" not in result


# ----------------------------------------------------------------------
# inject_citations


@pytest.mark.parametrize("text", ["", "Anything at all.", "Para one.\n\nPara two [1]."])
def test_inject_is_noop_without_sources(text: str) -> None:
    assert inject_citations(text, []) == text


def test_inject_distributes_every_source_once() -> None:
    text = "First paragraph ends here.\n\nSecond one too!\n\nThird asks why?"

    result = inject_citations(text, _sources(6))

    for index in range(1, 7):
        assert result.count(f"[{index}]") == 1
    assert result.split("\n\n")[0] == "First paragraph ends here.[1][2]"
    assert result.split("\n\n")[1] == "Second one too![3][4]"
    assert result.split("\n\n")[2] == "Third asks why?[5][6]"


def test_inject_appends_leftovers_at_end() -> None:
    text = "Only one paragraph. With two sentences"

    result = inject_citations(text, _sources(3))

    assert result == "Only one paragraph.[1][2][3] With two sentences"


def test_inject_skips_already_cited_paragraphs() -> None:
    text = "Already cited [1].\n\nNeeds a citation."

    result = inject_citations(text, _sources(2))

    assert result.startswith("Already cited [1].\n\n")
    assert result.endswith("Needs a citation.[1][2]")


def test_inject_handles_text_without_paragraphs() -> None:
    assert inject_citations("   ", _sources(2)) == "   [1][2]"


def test_inject_appends_when_no_terminator() -> None:
    assert inject_citations("no punctuation at all", _sources(1)) == "no punctuation at all[1]"


# ----------------------------------------------------------------------
# brevity and finalization


def test_is_response_too_short_counts_words_and_sentences() -> None:
    short = " ".join(["word"] * 40) + ". Another sentence."
    long = ". ".join(" ".join(["word"] * 20) for _ in range(4)) + "."

    assert is_response_too_short(short)
    assert not is_response_too_short(long)
    assert is_response_too_short(" ".join(["word"] * 100) + ".")


def test_finalize_prefers_structured_sources_and_injects() -> None:
    raw = RawAnswer.create(
        "Contracts need consideration.\n\nSources:\n[1] https://ignored.example.com",
        sources=_sources(1),
        follow_ups=["What counts as consideration?"],
    )

    message = finalize_response(raw)

    assert message is not None
    assert message.content == "Contracts need consideration.[1]"
    assert message.sources == tuple(_sources(1))
    assert message.follow_ups == ("What counts as consideration?",)


def test_finalize_derives_sources_from_text() -> None:
    raw = RawAnswer.create("Read https://law.cornell.edu/wex/contract for details.")

    message = finalize_response(raw)

    assert message is not None
    assert [source.url for source in message.sources] == ["https://law.cornell.edu/wex/contract"]
    assert has_citation_markers(message.content)


def test_finalize_falls_back_to_raw_text_when_sanitizer_empties_it() -> None:
    raw = RawAnswer.create("  Sources: everything here  ")

    message = finalize_response(raw)

    assert message is not None
    assert message.content == "Sources: everything here"


def test_finalize_returns_none_for_blank_answer() -> None:
    assert finalize_response(RawAnswer.create("   \n ")) is None


def test_share_text_lists_sources() -> None:
    text = share_text("Answer body.", _sources(2))

    assert text == (
        "Answer body.\n\nSources:\n"
        "[1] Source 1: https://example1.org/page\n"
        "[2] Source 2: https://example2.org/page\n"
    )
    assert share_text("Plain.", []) == "Plain."


def test_citation_markers_detected() -> None:
    assert has_citation_markers("x [12] y")
    assert not has_citation_markers("x [a] y")
    assert re.fullmatch(r"\[\d+\]", "[3]")
