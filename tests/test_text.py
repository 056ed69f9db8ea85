"""Tests for tokenisation and snippets."""

from visibility_scanner.text import make_snippet, normalise_token, tokenize


class TestTokenize:
    def test_stop_words_removed_and_terms_normalised(self) -> None:
        assert tokenize("The telescopes are mounted on the roof") == ["telescop", "mount", "roof"]

    def test_singular_and_plural_share_a_term(self) -> None:
        assert tokenize("telescope") == tokenize("Telescopes")
        assert normalise_token("batteries") == "battery"

    def test_short_words_kept_whole(self) -> None:
        assert normalise_token("tips") == "tips"
        assert normalise_token("Acme's") == "acme"


class TestMakeSnippet:
    def test_window_around_first_hit(self) -> None:
        text = " ".join(f"w{i}" for i in range(100)) + " telescope " + " ".join(f"z{i}" for i in range(100))
        snippet = make_snippet(text, "telescope", context_words=3)
        assert snippet == "...w97 w98 w99 telescope z0 z1..."

    def test_no_hit_returns_leading_words(self) -> None:
        assert make_snippet("one two three", "missing") == "one two three"
        assert make_snippet("", "anything") == ""
