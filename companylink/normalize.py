import re

from bs4 import BeautifulSoup

COMPANY_PATH_RE = re.compile(r"linkedin\.com/company/([^/?#]+)", re.IGNORECASE)


def normalize_search_term(term: str) -> str:
    """Cache key form of a search term: lower-cased and trimmed."""
    return term.strip().lower()


def strip_whitespace(s: str) -> str:
    return re.sub(r"\s+", "", s)


def is_company_profile_url(url: str) -> bool:
    return bool(url) and COMPANY_PATH_RE.search(url) is not None


def extract_slug(url: str) -> str:
    """Return the company vanity slug from a profile URL, or ''."""
    if not url:
        return ""
    match = COMPANY_PATH_RE.search(url)
    return match.group(1) if match else ""


def html_to_text(markup: str) -> str:
    """Drop tags, decode entities and collapse whitespace."""
    if not markup:
        return ""
    text = BeautifulSoup(markup, "html.parser").get_text(" ", strip=True)
    return " ".join(text.split())


def extract_display_name(title: str, description: str = "") -> str:
    """
    Company name as shown by the provider.

    Titles usually look like "Microsoft | LinkedIn"; the part before the
    first pipe is used. Falls back to the first three words of the
    description. Provider highlight markup and entities are decoded first.
    """
    head = html_to_text(title).split("|", 1)[0].strip()
    if head:
        return head
    words = html_to_text(description).split()
    return " ".join(words[:3])


def clean_description(description: str, limit: int = 200) -> str:
    """Strip provider highlight markup and truncate."""
    return html_to_text(description)[:limit]
