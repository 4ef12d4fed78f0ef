"""
HTML cleaner.

Turns a raw job page into compact plain text for extraction: strips boilerplate,
finds the main content region and bounds the output size for LLM prompts.
"""

import re
import math
import logging
from typing import Optional, Sequence

from bs4 import BeautifulSoup, Comment

logger = logging.getLogger(__name__)

MAX_TOKENS = 25_000
CHARS_PER_TOKEN = 3
MIN_CONTENT_LENGTH = 100
HARD_FLOOR_CHARS = 10_000

REMOVE_SELECTORS = (
    "script", "style", "noscript", "template", "iframe", "svg",
    "nav", "header", "footer",
    "[class~='ad']", "[class*='advert']", "[id*='advert']", "[class*='ad-slot']", "[id^='ad-']",
    "[class*='tracking']", "[class*='analytics']", "[id*='tracking']",
    "[class*='social']", "[class*='share']", "[id*='social']", "[id*='share']",
    "[class*='cookie']", "[id*='cookie']",
    "[style*='display:none']", "[style*='display: none']", "[hidden]", "[aria-hidden='true']",
)

SEMANTIC_SELECTORS = ("main", "article", "[role='main']")
CONTENT_SELECTORS = (
    ".content", "#content", ".main-content", ".job-content", ".job-description",
    "[class*='job-description']", "[class*='job-details']", "[class*='posting']",
)
SPA_ROOT_SELECTORS = ("#root", "#app", "#__next")


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    return math.ceil(len(text) / chars_per_token)


def normalize_whitespace(text: str) -> str:
    text = re.sub(r'[ \t\r\f\v\xa0]+', ' ', text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r'\n{3,}', "\n\n", text)
    return text.strip()


def _cut_at_sentence(text: str) -> str:
    return re.sub(r'\.[^.]*$', '.', text)


class HTMLCleaner:
    """Extracts the readable main content of a page as bounded plain text."""

    remove_selectors: Sequence[str] = REMOVE_SELECTORS
    candidate_groups: Sequence[Sequence[str]] = (SEMANTIC_SELECTORS, CONTENT_SELECTORS, SPA_ROOT_SELECTORS)

    def __init__(self, max_tokens: int = MAX_TOKENS, chars_per_token: int = CHARS_PER_TOKEN,
                 min_content_length: int = MIN_CONTENT_LENGTH, hard_floor_chars: int = HARD_FLOOR_CHARS):
        self.max_tokens = max_tokens
        self.chars_per_token = chars_per_token
        self.min_content_length = min_content_length
        self.hard_floor_chars = hard_floor_chars

    @classmethod
    def from_config(cls, config) -> "HTMLCleaner":
        return cls(
            max_tokens=config.cleaner_max_tokens,
            chars_per_token=config.cleaner_chars_per_token,
            min_content_length=config.cleaner_min_content_length,
            hard_floor_chars=config.cleaner_hard_floor_chars,
        )

    def clean(self, html: Optional[str]) -> str:
        if not html or not html.strip():
            return ""

        soup = BeautifulSoup(html, 'html.parser')
        self._remove_unwanted(soup)
        main = self._find_main_content(soup)
        text = normalize_whitespace(main.get_text("\n"))
        return self.truncate(text)

    def truncate(self, text: str) -> str:
        """Bound text to the token budget, preferring sentence boundaries."""
        max_chars = self.max_tokens * self.chars_per_token
        if len(text) <= max_chars:
            return text

        truncated = _cut_at_sentence(text[:max_chars])
        while (estimate_tokens(truncated, self.chars_per_token) > self.max_tokens
               and len(truncated) > self.hard_floor_chars):
            truncated = _cut_at_sentence(truncated[:int(len(truncated) * 0.9)])

        logger.debug(f"[html_cleaner] Truncated {len(text)} -> {len(truncated)} chars")
        return truncated

    def _remove_unwanted(self, soup: BeautifulSoup) -> None:
        for selector in self.remove_selectors:
            for element in soup.select(selector):
                if getattr(element, 'decomposed', False):
                    continue
                element.decompose()

        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()

    def _text_length(self, node) -> int:
        return len(node.get_text(" ", strip=True))

    def _find_main_content(self, soup: BeautifulSoup):
        for group in self.candidate_groups:
            for selector in group:
                node = soup.select_one(selector)
                if node is not None and self._text_length(node) >= self.min_content_length:
                    return node

        body = soup.body or soup
        divs = body.find_all('div')
        if divs:
            largest = max(divs, key=self._text_length)
            if self._text_length(largest) >= self.min_content_length:
                return largest

        return body
