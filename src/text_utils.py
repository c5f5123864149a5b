"""
Text normalization for extracted document text and scraped HTML.

PDF text layers, OCR output and HTML pages all pass through normalize_text so
the heading-anchored extractor sees the same shape regardless of source.
"""

import re

from bs4 import BeautifulSoup

_HORIZONTAL_WS = re.compile(r'[ \t\f\v]+')
# OCR sometimes splits a digit run ("730 209"); glue digits back together.
_SPLIT_DIGITS = re.compile(r'(?<=\d)\s+(?=\d)')
_SPACE_AROUND_NEWLINE = re.compile(r' *\n *')
_EXTRA_BLANK_LINES = re.compile(r'\n{3,}')

_LINE_BREAK_TAGS = ('br', 'p', 'tr', 'div', 'li', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'table')

PLAUSIBLE_HEADING = re.compile(r'(รางวัล\s*ที่\s*1|เลขหน้า\s*3\s*ตัว|เลขท้าย\s*2\s*ตัว)')
SIX_DIGITS = re.compile(r'\d{6}')


def normalize_text(text: str) -> str:
    """
    Canonicalize extracted text. Idempotent.

    - CRLF / CR become LF, NBSP becomes a space
    - runs of horizontal whitespace collapse to one space
    - whitespace strictly between two digits is removed
    - three or more consecutive newlines collapse to two
    """
    s = str(text if text is not None else '')
    s = s.replace('\r\n', '\n').replace('\r', '\n').replace('\u00a0', ' ')
    s = _HORIZONTAL_WS.sub(' ', s)
    s = _SPLIT_DIGITS.sub('', s)
    s = _SPACE_AROUND_NEWLINE.sub('\n', s)
    s = _EXTRA_BLANK_LINES.sub('\n\n', s)
    return s.strip()


def html_to_text(html: str) -> str:
    """
    Strip markup to plain text.

    Script/style blocks are dropped, block-level tags become line breaks and
    every other tag boundary becomes a space. Entities are decoded by the parser.
    """
    soup = BeautifulSoup(str(html or ''), 'html.parser')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    for tag in soup.find_all(_LINE_BREAK_TAGS):
        tag.append('\n')
    text = soup.get_text(separator=' ')
    text = _HORIZONTAL_WS.sub(' ', text.replace('\u00a0', ' '))
    text = _SPACE_AROUND_NEWLINE.sub('\n', text)
    return _EXTRA_BLANK_LINES.sub('\n\n', text).strip()


def has_likely_prize_digits(text: str) -> bool:
    """Plausibility check: at least one 6-digit run and one category heading."""
    t = str(text or '')
    return bool(SIX_DIGITS.search(t)) and bool(PLAUSIBLE_HEADING.search(t))
