"""Fixed dictionaries and pattern extraction for keyword classification.

Terms are matched case-insensitively on word boundaries, longest term
first; a shorter term inside an already matched span is ignored, so
"chief executive officer" yields CEO once rather than also "Executive".
"""

import re
from collections.abc import Iterable
from functools import cache

# Worker trigger words, checked as word prefixes ("generating", "analyzed")
DISCOVERY_TRIGGERS = ("find", "generat", "scrap", "prospect", "apollo", "source")
RESEARCH_TRIGGERS = ("research", "linkedin", "analy", "investigat", "look into", "dig into")
MESSAGING_TRIGGERS = (
    "email",
    "gmail",
    "inbox",
    "message",
    "mail",
    "campaign",
    "outreach",
    "send",
    "reply",
    "replies",
    "unread",
    "monitor",
)
# Messaging requests that read rather than send
INBOX_TRIGGERS = (
    "inbox",
    "unread",
    "replies",
    "monitor",
    "check my email",
    "recent email",
    "latest message",
    "new message",
)

# term -> canonical business type
BUSINESS_TERMS: dict[str, str] = {
    # Food & beverage
    "coffee shop": "coffee shop",
    "cafe": "cafe",
    "restaurant": "restaurant",
    "bar": "bar",
    "pub": "pub",
    "bakery": "bakery",
    "pizzeria": "pizzeria",
    "fast food": "fast food",
    "food truck": "food truck",
    "catering": "catering",
    "brewery": "brewery",
    "winery": "winery",
    # Health & beauty
    "salon": "salon",
    "barbershop": "barbershop",
    "spa": "spa",
    "nail salon": "nail salon",
    "beauty salon": "beauty salon",
    "hair salon": "hair salon",
    "dental clinic": "dental clinic",
    "dental office": "dental office",
    "dentist": "dentist",
    "medical clinic": "medical clinic",
    "clinic": "clinic",
    "healthcare": "healthcare",
    "pharmacy": "pharmacy",
    "optometry": "optometry",
    "chiropractic": "chiropractic",
    # Fitness
    "gym": "gym",
    "fitness": "fitness",
    "yoga studio": "yoga studio",
    "pilates": "pilates",
    "crossfit": "crossfit",
    "martial arts": "martial arts",
    "wellness center": "wellness center",
    # Professional services
    "law firm": "law firm",
    "accounting": "accounting",
    "consultancy": "consultancy",
    "agency": "agency",
    "marketing agency": "marketing agency",
    "advertising agency": "advertising agency",
    "real estate": "real estate",
    "insurance": "insurance",
    "financial services": "financial services",
    "software": "software",
    "software company": "software",
    "saas": "saas",
    "tech company": "technology",
    "technology": "technology",
    "startup": "startup",
    "consulting": "consulting",
    # Retail
    "retail": "retail",
    "boutique": "boutique",
    "clothing store": "clothing store",
    "electronics store": "electronics store",
    "bookstore": "bookstore",
    "jewelry store": "jewelry store",
    "furniture store": "furniture store",
    "car dealership": "car dealership",
    "auto dealership": "car dealership",
    "hardware store": "hardware store",
    "grocery store": "grocery store",
    "ecommerce": "ecommerce",
    # Hospitality
    "hotel": "hotel",
    "motel": "motel",
    "bed and breakfast": "bed and breakfast",
    "travel agency": "travel agency",
    "event planning": "event planning",
    "wedding planning": "wedding planning",
    # Construction & home services
    "construction": "construction",
    "contractor": "contractor",
    "plumbing": "plumbing",
    "electrical": "electrical",
    "hvac": "hvac",
    "landscaping": "landscaping",
    "cleaning service": "cleaning service",
    "home improvement": "home improvement",
    # Education
    "school": "school",
    "training center": "training center",
    "tutoring": "tutoring",
    "daycare": "daycare",
    "preschool": "preschool",
    "language school": "language school",
    # Automotive
    "auto repair": "auto repair",
    "car wash": "car wash",
    "auto parts": "auto parts",
    "mechanic": "mechanic",
    # Media
    "photography": "photography",
    "videography": "videography",
    "art gallery": "art gallery",
    "event venue": "event venue",
}

# term -> canonical job title
JOB_TITLE_TERMS: dict[str, str] = {
    "owner": "Owner",
    "co-owner": "Co-Owner",
    "business owner": "Owner",
    "ceo": "CEO",
    "chief executive officer": "CEO",
    "cfo": "CFO",
    "chief financial officer": "CFO",
    "cto": "CTO",
    "chief technology officer": "CTO",
    "coo": "COO",
    "chief operating officer": "COO",
    "cmo": "CMO",
    "chief marketing officer": "CMO",
    "founder": "Founder",
    "co-founder": "Co-Founder",
    "cofounder": "Co-Founder",
    "managing partner": "Managing Partner",
    "partner": "Partner",
    "general manager": "General Manager",
    "operations manager": "Operations Manager",
    "sales manager": "Sales Manager",
    "marketing manager": "Marketing Manager",
    "office manager": "Office Manager",
    "project manager": "Project Manager",
    "manager": "Manager",
    "managing director": "Managing Director",
    "executive director": "Executive Director",
    "sales director": "Sales Director",
    "marketing director": "Marketing Director",
    "director": "Director",
    "vp": "VP",
    "vice president": "VP",
    "svp": "SVP",
    "senior vice president": "SVP",
    "evp": "EVP",
    "executive vice president": "EVP",
    "president": "President",
    "head of sales": "Head of Sales",
    "head of marketing": "Head of Marketing",
    "head of engineering": "Head of Engineering",
    "principal": "Principal",
    "administrator": "Administrator",
    "supervisor": "Supervisor",
    "consultant": "Consultant",
}

LOCATION_PREPOSITIONS = re.compile(
    r"\b(?:located\s+in|based\s+in|in|from|near|around)\s+", re.IGNORECASE
)

# Words that never start or continue a place name
_NON_PLACE_WORDS = frozenset(
    {
        "a", "an", "the", "my", "our", "their", "your", "this", "that", "these", "those",
        "and", "or", "with", "for", "of", "to", "at", "on", "by", "who", "which", "all",
        "any", "some", "area", "city", "region", "leads", "lead", "companies", "company",
        "businesses", "business", "people", "contacts", "linkedin", "email", "gmail",
        "inbox", "apollo", "google", "industry", "sector", "charge", "order", "case",
        "total", "general", "particular", "progress", "touch",
    }
)

LINKEDIN_URL_RE = re.compile(
    r"(?:https?://)?(?:[a-z]{2,3}\.)?linkedin\.com/in/[A-Za-z0-9\-_%]+/?", re.IGNORECASE
)
EMAIL_ADDRESS_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
CAMPAIGN_ID_RE = re.compile(
    r"\bcampaign\s*(?:id\s*)?[:#]?\s*([A-Za-z0-9_-]*\d[A-Za-z0-9_-]*)", re.IGNORECASE
)
_ID = r"[A-Za-z0-9_-]*\d[A-Za-z0-9_-]*"
LEAD_IDS_RE = re.compile(
    rf"\blead(?:s|\s+ids?)?\s*[:#]?\s*({_ID}(?:\s*(?:,|and|&)?\s*{_ID})*)", re.IGNORECASE
)


def _plural(term: str) -> str:
    escaped = re.escape(term).replace(r"\ ", r"\s+")
    if term.endswith("y") and len(term) > 1 and term[-2] not in "aeiou":
        return escaped[:-1] + "(?:y|ies)"
    if term.endswith(("s", "sh", "ch", "x")):
        return escaped + "(?:es)?"
    return escaped + "s?"


@cache
def _term_pattern(term: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![\w-]){_plural(term)}(?![\w-])", re.IGNORECASE)


def match_terms(text: str, terms: dict[str, str]) -> list[str]:
    """Canonical values of dictionary terms found in ``text``, in order of appearance."""
    spans: list[tuple[int, int, str]] = []
    for term in sorted(terms, key=len, reverse=True):
        for match in _term_pattern(term).finditer(text):
            start, end = match.span()
            if any(start < s_end and end > s_start for s_start, s_end, _ in spans):
                continue
            spans.append((start, end, terms[term]))
    ordered: list[str] = []
    for _, _, canonical in sorted(spans):
        if canonical not in ordered:
            ordered.append(canonical)
    return ordered


def _is_dictionary_word(word: str) -> bool:
    return bool(match_terms(word, BUSINESS_TERMS) or match_terms(word, JOB_TITLE_TERMS))


def _place_word(word: str, *, require_capital: bool) -> bool:
    if not word[:1].isalpha() or len(word) < 2:
        return False
    if require_capital and not word[0].isupper():
        return False
    lower = word.lower()
    return lower not in _NON_PLACE_WORDS and not _is_dictionary_word(word)


def extract_locations(text: str) -> list[str]:
    """Places named after "in / from / based in / located in / near".

    The first word after the preposition may be any case; following words
    only extend the name when capitalized ("in San Francisco software").
    Several places may be joined by "and", "or" or commas.
    """
    found: list[str] = []
    for prep in LOCATION_PREPOSITIONS.finditer(text):
        tokens = re.findall(r"[A-Za-z][A-Za-z'-]*|\S", text[prep.end() :])
        current: list[str] = []
        expecting_start = True
        require_capital = False
        for token in tokens:
            if expecting_start:
                if not _place_word(token, require_capital=require_capital):
                    break
                current = [token]
                expecting_start = False
                continue
            if token[0].isupper() and _place_word(token, require_capital=True):
                current.append(token)
                continue
            found.append(" ".join(current))
            current = []
            if token.lower() in ("and", "or", ",", "&"):
                expecting_start = True
                require_capital = True
                continue
            break
        if current:
            found.append(" ".join(current))

    places: list[str] = []
    for place in found:
        normalized = " ".join(w if w.isupper() else w.capitalize() for w in place.split())
        if normalized not in places:
            places.append(normalized)
    return places


def extract_businesses(text: str) -> list[str]:
    return match_terms(text, BUSINESS_TERMS)


def extract_job_titles(text: str) -> list[str]:
    return match_terms(text, JOB_TITLE_TERMS)


def extract_linkedin_url(text: str) -> str | None:
    match = LINKEDIN_URL_RE.search(text)
    if match is None:
        return None
    url = match.group(0).rstrip("/")
    return url if url.lower().startswith("http") else f"https://{url}"


def extract_mailbox(text: str) -> str | None:
    match = EMAIL_ADDRESS_RE.search(text)
    return match.group(0).lower() if match else None


def extract_campaign_id(text: str) -> str | None:
    match = CAMPAIGN_ID_RE.search(text)
    return match.group(1) if match else None


def extract_lead_ids(text: str) -> list[str]:
    ids: list[str] = []
    for match in LEAD_IDS_RE.finditer(text):
        for lead_id in re.findall(_ID, match.group(1)):
            if lead_id not in ids:
                ids.append(lead_id)
    return ids


def contains_any(text: str, triggers: Iterable[str]) -> bool:
    """True if any trigger starts a word in ``text``."""
    lowered = text.lower()
    return any(re.search(rf"(?<![\w-]){re.escape(t)}", lowered) for t in triggers)
