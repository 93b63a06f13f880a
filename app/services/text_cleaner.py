"""
Text Cleaning for transaction emails.

Handles:
1. HTML → Plain Text conversion
2. Reply-history removal, so amounts quoted from an earlier
   message in the thread are not picked up as this message's amount
"""

import re
from bs4 import BeautifulSoup

# Lines that open a quoted reply section
REPLY_PATTERNS = [
    r'^on\s+.+wrote:.*$',
    r'^-{3,}\s*original\s*message\s*-{3,}$',
    r'^>+\s*.*$',
]

NOISE_PATTERNS = [
    r'\[image:.*?\]',
    r'\[cid:.*?\]',
]

_HTML_HINT = re.compile(r'<\s*(html|body|div|table|p|br|span)\b', re.IGNORECASE)


def looks_like_html(text: str) -> bool:
    return bool(text and _HTML_HINT.search(text))


def html_to_text(raw_html: str) -> str:
    """
    Convert HTML email content to clean plain text.

    Args:
        raw_html: Raw HTML string from email body

    Returns:
        Plain text with normalized whitespace
    """
    if not raw_html:
        return ""

    soup = BeautifulSoup(raw_html, "html.parser")

    # Remove script, style, and head tags
    for tag in soup(['script', 'style', 'head', 'meta', 'link']):
        tag.decompose()

    # Convert <br> and </p> to newlines
    for br in soup.find_all('br'):
        br.replace_with('\n')
    for p in soup.find_all('p'):
        p.insert_after('\n')

    text = soup.get_text(separator=' ')

    # Normalize whitespace
    text = re.sub(r'[ \t\xa0]+', ' ', text)
    text = re.sub(r'\n\s*\n', '\n\n', text)
    text = re.sub(r'\n{3,}', '\n\n', text)

    return text.strip()


def remove_reply_history(text: str) -> str:
    """
    Drop everything from the first quoted/forwarded marker onwards.

    Args:
        text: Plain text email content

    Returns:
        Only the newest message's text
    """
    if not text:
        return ""

    kept = []
    for line in text.split('\n'):
        stripped = line.strip()
        if any(re.match(pattern, stripped, re.IGNORECASE) for pattern in REPLY_PATTERNS):
            break
        if any(re.search(pattern, stripped, re.IGNORECASE) for pattern in NOISE_PATTERNS):
            continue
        kept.append(line)

    result = '\n'.join(kept)
    result = re.sub(r'\n{3,}', '\n\n', result)
    return result.strip()


def clean_body(raw_body: str) -> str:
    """Full cleaning for a message body: HTML → text, then strip reply history."""
    text = html_to_text(raw_body) if looks_like_html(raw_body) else (raw_body or "")
    return remove_reply_history(text)
