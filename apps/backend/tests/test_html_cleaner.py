"""
Tests for the HTML cleaner.
"""

from core.html_cleaner import HTMLCleaner, estimate_tokens, normalize_whitespace

SENTENCE = "This is sentence number {n} about the job. "


def _page(body: str) -> str:
    return f"<html><body>{body}</body></html>"


class TestHTMLCleaner:

    def test_strips_boilerplate(self):
        html = _page(
            "<nav>Menu Home</nav><script>var tracking = 1;</script>"
            "<div class='cookie-banner'>Accept cookies</div><!-- comment -->"
            "<main><h1>Data Engineer</h1><p>" + "Build data pipelines for the analytics team. " * 5 + "</p></main>"
            "<footer>Copyright</footer>"
        )
        cleaned = HTMLCleaner().clean(html)
        assert "Data Engineer" in cleaned
        assert "Menu" not in cleaned
        assert "tracking" not in cleaned
        assert "Accept cookies" not in cleaned
        assert "comment" not in cleaned
        assert "Copyright" not in cleaned

    def test_prefers_main_content(self):
        html = _page(
            "<div class='sidebar'>Related jobs and other links</div>"
            "<article>" + "The role involves owning the ingestion layer end to end. " * 4 + "</article>"
        )
        cleaned = HTMLCleaner().clean(html)
        assert cleaned.startswith("The role involves")
        assert "Related jobs" not in cleaned

    def test_short_main_falls_back_to_largest_div(self):
        html = _page(
            "<main>Too short</main>"
            "<div id='x'>" + "A long posting body with details about the position. " * 4 + "</div>"
        )
        cleaned = HTMLCleaner().clean(html)
        assert cleaned.startswith("A long posting body")

    def test_truncates_at_sentence_boundary(self):
        text = "".join(SENTENCE.format(n=i) for i in range(200))
        html = _page(f"<main><p>{text}</p></main>")
        cleaner = HTMLCleaner(max_tokens=100, chars_per_token=3, hard_floor_chars=50)
        cleaned = cleaner.clean(html)
        assert len(cleaned) <= 300
        assert cleaned.endswith(".")
        assert estimate_tokens(cleaned, 3) <= 100

    def test_short_text_untouched(self):
        cleaner = HTMLCleaner(max_tokens=100, chars_per_token=3)
        assert cleaner.truncate("Short text.") == "Short text."

    def test_empty_input(self):
        assert HTMLCleaner().clean("") == ""
        assert HTMLCleaner().clean(None) == ""


def test_normalize_whitespace():
    assert normalize_whitespace("  a \t b\xa0c \n\n\n\n d  ") == "a b c\n\nd"
