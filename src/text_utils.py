import re

SMART_QUOTES = re.compile(r"[‘’“”]")
ODD_PUNCTUATION = re.compile(r"[^\w\s,.-]")
WHITESPACE = re.compile(r"\s+")
TOKEN_SPLIT = re.compile(r"[\s,.-]+")

# Country name -> ISO-2 code (extend as needed)
COUNTRY_ALIASES = {
    'netherlands': 'nl',
    'holland': 'nl',
    'china': 'cn',
    'prc': 'cn',
    'denmark': 'dk',
    'germany': 'de',
    'belgium': 'be',
    'france': 'fr',
    'united kingdom': 'uk',
    'uk': 'uk',
    'united states': 'us',
    'usa': 'us',
}

# Longest names first so "united states" wins over any shorter alias
_COUNTRY_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in sorted(COUNTRY_ALIASES, key=len, reverse=True)) + r")\b"
)


def normalize(value):
    """Canonical form of a free-text token used for comparisons."""
    if value is None:
        return ""
    s = str(value).lower()
    s = SMART_QUOTES.sub("", s)
    s = ODD_PUNCTUATION.sub("", s)
    s = WHITESPACE.sub(" ", s)
    return s.strip()


def normalize_and_map_country(value):
    """normalize() plus whole-word replacement of country names by ISO-2 codes."""
    s = normalize(value)
    s = _COUNTRY_PATTERN.sub(lambda m: COUNTRY_ALIASES[m.group(1)], s)
    return WHITESPACE.sub(" ", s).strip()


def tokenize(value):
    return [t for t in TOKEN_SPLIT.split(value) if t]


def extract_country_iso(location):
    """
    "Rotterdam, ZH, NL" -> "NL". Anything without a trailing two-letter
    part is "UNK".
    """
    if not location:
        return "UNK"
    parts = [p.strip() for p in str(location).split(",")]
    iso = parts[-1]
    if len(iso) == 2 and iso.isalpha():
        return iso.upper()
    return "UNK"
