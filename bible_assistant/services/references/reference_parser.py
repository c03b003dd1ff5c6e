# services/references/reference_parser.py
"""
Scripture reference parser and validator.

Handles the ways references usually show up in chat text:
- Full names: "Genesis 1:1"
- Abbreviations: "Gen 1:1", "Gen. 1:1"
- Numbered books: "1 John 3:16", "1John 3:16", "I John 3:16", "First John 3:16"
- Verse ranges: "Romans 8:28-30" (en and em dashes are accepted)
- Dot separators: "John 3.16"
- Chapter-only: "Psalm 23", "John chapter 3"
- Framed: "(John 3:16)", "see Romans 8:28", "cf. Heb 11:1"

Parsing is structural only. validate() checks a parsed reference against the
canonical chapter counts in data/book_chapters.json. Nothing in this module
raises on malformed input; "no match" and "invalid" are ordinary outcomes.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DATA_FILE = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "data",
    "book_chapters.json",
)


def _load_book_table(path: str = DATA_FILE) -> Tuple[Dict[str, str], Dict[str, int], int]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    names = {book["id"]: book["name"] for book in data["books"]}
    counts = {book["id"]: int(book["chapters"]) for book in data["books"]}
    return names, counts, int(data.get("max_verse", 180))


# Canonical OSIS code -> display name / chapter count
BOOK_DISPLAY_NAMES, CHAPTER_COUNTS, MAX_VERSE = _load_book_table()


# Alias table - keys are lowercase, values are OSIS codes.
# Numbered books are listed with an arabic prefix only; roman numerals and
# ordinals ("II", "Second") are rewritten before lookup.
BOOK_ALIASES = {
    # Law
    "genesis": "GEN", "gen": "GEN", "gn": "GEN",
    "exodus": "EXO", "exod": "EXO", "exo": "EXO", "ex": "EXO",
    "leviticus": "LEV", "lev": "LEV", "lv": "LEV", "le": "LEV",
    "numbers": "NUM", "num": "NUM", "nu": "NUM", "nm": "NUM",
    "deuteronomy": "DEU", "deut": "DEU", "deu": "DEU", "dt": "DEU", "de": "DEU",

    # History
    "joshua": "JOS", "josh": "JOS", "jos": "JOS",
    "judges": "JDG", "judg": "JDG", "jdg": "JDG", "jg": "JDG",
    "ruth": "RUT", "rth": "RUT", "ru": "RUT",
    "1 samuel": "1SA", "1 sam": "1SA", "1 sa": "1SA",
    "2 samuel": "2SA", "2 sam": "2SA", "2 sa": "2SA",
    "1 kings": "1KI", "1 kgs": "1KI", "1 ki": "1KI",
    "2 kings": "2KI", "2 kgs": "2KI", "2 ki": "2KI",
    "1 chronicles": "1CH", "1 chron": "1CH", "1 chr": "1CH", "1 ch": "1CH",
    "2 chronicles": "2CH", "2 chron": "2CH", "2 chr": "2CH", "2 ch": "2CH",
    "ezra": "EZR", "ezr": "EZR",
    "nehemiah": "NEH", "neh": "NEH", "ne": "NEH",
    "esther": "EST", "esth": "EST", "est": "EST", "es": "EST",

    # Wisdom
    "job": "JOB", "jb": "JOB",
    "psalms": "PSA", "psalm": "PSA", "psa": "PSA", "pss": "PSA", "ps": "PSA",
    "proverbs": "PRO", "proverb": "PRO", "prov": "PRO", "pro": "PRO", "pr": "PRO",
    "ecclesiastes": "ECC", "eccles": "ECC", "eccl": "ECC", "ecc": "ECC", "ec": "ECC",
    "qoheleth": "ECC",
    "song of solomon": "SNG", "song of songs": "SNG", "song": "SNG", "sos": "SNG",
    "ss": "SNG", "canticles": "SNG",

    # Prophets
    "isaiah": "ISA", "isa": "ISA", "is": "ISA",
    "jeremiah": "JER", "jer": "JER", "je": "JER",
    "lamentations": "LAM", "lam": "LAM", "la": "LAM",
    "ezekiel": "EZK", "ezek": "EZK", "eze": "EZK", "ezk": "EZK",
    "daniel": "DAN", "dan": "DAN", "dn": "DAN", "da": "DAN",
    "hosea": "HOS", "hos": "HOS", "ho": "HOS",
    "joel": "JOL", "joe": "JOL", "jl": "JOL",
    "amos": "AMO", "amo": "AMO", "am": "AMO",
    "obadiah": "OBA", "obad": "OBA", "oba": "OBA", "ob": "OBA",
    "jonah": "JON", "jon": "JON", "jnh": "JON",
    "micah": "MIC", "mic": "MIC", "mi": "MIC",
    "nahum": "NAM", "nah": "NAM", "na": "NAM",
    "habakkuk": "HAB", "hab": "HAB", "hb": "HAB",
    "zephaniah": "ZEP", "zeph": "ZEP", "zep": "ZEP",
    "haggai": "HAG", "hag": "HAG", "hg": "HAG",
    "zechariah": "ZEC", "zech": "ZEC", "zec": "ZEC",
    "malachi": "MAL", "mal": "MAL", "ml": "MAL",

    # Gospels and Acts
    "matthew": "MAT", "matt": "MAT", "mat": "MAT", "mt": "MAT",
    "mark": "MRK", "mrk": "MRK", "mar": "MRK", "mk": "MRK",
    "luke": "LUK", "luk": "LUK", "lk": "LUK", "lu": "LUK",
    "john": "JHN", "jhn": "JHN", "joh": "JHN", "jn": "JHN",
    "acts": "ACT", "acts of the apostles": "ACT", "act": "ACT", "ac": "ACT",

    # Epistles
    "romans": "ROM", "rom": "ROM", "ro": "ROM",
    "1 corinthians": "1CO", "1 cor": "1CO", "1 co": "1CO",
    "2 corinthians": "2CO", "2 cor": "2CO", "2 co": "2CO",
    "galatians": "GAL", "gal": "GAL", "ga": "GAL",
    "ephesians": "EPH", "eph": "EPH", "ep": "EPH",
    "philippians": "PHP", "phil": "PHP", "php": "PHP", "pp": "PHP",
    "colossians": "COL", "col": "COL",
    "1 thessalonians": "1TH", "1 thess": "1TH", "1 thes": "1TH", "1 th": "1TH",
    "2 thessalonians": "2TH", "2 thess": "2TH", "2 thes": "2TH", "2 th": "2TH",
    "1 timothy": "1TI", "1 tim": "1TI", "1 ti": "1TI",
    "2 timothy": "2TI", "2 tim": "2TI", "2 ti": "2TI",
    "titus": "TIT", "tit": "TIT", "ti": "TIT",
    "philemon": "PHM", "philem": "PHM", "phlm": "PHM", "phm": "PHM",
    "hebrews": "HEB", "heb": "HEB", "he": "HEB",
    "james": "JAS", "jas": "JAS", "jam": "JAS", "jm": "JAS",
    "1 peter": "1PE", "1 pet": "1PE", "1 pe": "1PE",
    "2 peter": "2PE", "2 pet": "2PE", "2 pe": "2PE",
    "1 john": "1JN", "1 jn": "1JN", "1 jhn": "1JN",
    "2 john": "2JN", "2 jn": "2JN", "2 jhn": "2JN",
    "3 john": "3JN", "3 jn": "3JN", "3 jhn": "3JN",
    "jude": "JUD", "jud": "JUD", "jd": "JUD",
    "revelation": "REV", "revelations": "REV", "rev": "REV", "re": "REV",
    "apocalypse": "REV",
}

# Space-stripped aliases, e.g. "1john", "songofsongs"
_COMPACT_ALIASES = {alias.replace(" ", ""): code for alias, code in BOOK_ALIASES.items()}

# Aliases that are also everyday words; only accepted when capitalized in the source text
AMBIGUOUS_ALIASES = {
    "is", "he", "am", "ex", "es", "la", "de", "le", "re", "ac", "ho", "mi",
    "na", "ti", "ob", "ga", "ep", "pp", "lu", "ru", "da", "je", "ne", "ro",
    "jon", "mar", "act", "job", "song", "jam", "joe", "jud", "tit", "pro",
}

LEAD_IN_WORDS = {"see", "cf", "compare", "read", "also"}

_ORDINALS = {
    "i": "1", "ii": "2", "iii": "3",
    "1st": "1", "2nd": "2", "3rd": "3",
    "first": "1", "second": "2", "third": "3",
}
_ORDINAL_RE = re.compile(r"^(iii|ii|i|1st|2nd|3rd|first|second|third)\s+(?=[a-z])")
_LEAD_IN_RE = re.compile(r"^\s*(?:(?:see|cf\.?|compare|read|also)[\s,:]+)+", re.IGNORECASE)
_DASHES_RE = re.compile(r"[‐-―−]")
_WORD_RE = re.compile(r"\S+")
_BOOK_WORD_RE = re.compile(r"[(\[\"']?(?P<word>[1-3]?[A-Za-z]+|[1-3])\.?")

# How far back from a chapter number to look for the book name
BOOK_WINDOW = 40
MAX_BOOK_WORDS = 4


def normalize_book_name(name: str, fuzzy: bool = True) -> Optional[str]:
    """
    Resolve a book name or abbreviation to its OSIS code.

    Lookup order: exact alias, space-stripped alias, then (if fuzzy) a unique
    prefix match of at least three characters ("Phili" -> PHP).

    Returns:
        OSIS code (e.g. "JHN", "1CO") or None when the name is not a book
    """
    if not name:
        return None

    key = name.lower().replace(".", " ").strip()
    key = re.sub(r"\s+", " ", key)
    key = _ORDINAL_RE.sub(lambda m: _ORDINALS[m.group(1)] + " ", key)

    if key in BOOK_ALIASES:
        return BOOK_ALIASES[key]

    compact = key.replace(" ", "")
    if compact in _COMPACT_ALIASES:
        return _COMPACT_ALIASES[compact]

    if not fuzzy or len(compact) < 3 or not compact[-1].isalpha():
        return None

    candidates = {code for alias, code in _COMPACT_ALIASES.items() if alias.startswith(compact)}
    if len(candidates) == 1:
        return candidates.pop()
    return None


def chapter_count(book_id: str) -> Optional[int]:
    """Number of chapters in a book, or None for an unknown code."""
    return CHAPTER_COUNTS.get(book_id)


def display_name(book_id: str) -> Optional[str]:
    return BOOK_DISPLAY_NAMES.get(book_id)


# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Reference:
    """
    A structurally parsed scripture reference.

    Equality and hashing use canonical_reference, so "Jn 3:16" and
    "John 3:16" are the same reference.
    """
    raw_input: str
    book_id: str               # OSIS code, e.g. "JHN"
    book_display_name: str     # e.g. "John"
    chapter: int
    verse_start: Optional[int] = None
    verse_end: Optional[int] = None

    @property
    def is_chapter_only(self) -> bool:
        return self.verse_start is None

    @property
    def is_range(self) -> bool:
        return (
            self.verse_start is not None
            and self.verse_end is not None
            and self.verse_end > self.verse_start
        )

    @property
    def canonical_reference(self) -> str:
        """Normalized display string, e.g. "1 Corinthians 13:4-7"."""
        ref = f"{self.book_display_name} {self.chapter}"
        if self.verse_start is not None:
            ref += f":{self.verse_start}"
            if self.is_range:
                ref += f"-{self.verse_end}"
        return ref

    def to_osis_format(self) -> str:
        """OSIS form: JHN.3.16 or JHN.3.16-JHN.3.18"""
        base = f"{self.book_id}.{self.chapter}"
        if self.verse_start is None:
            return base
        if self.is_range:
            return f"{base}.{self.verse_start}-{base}.{self.verse_end}"
        return f"{base}.{self.verse_start}"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Reference):
            return NotImplemented
        return self.canonical_reference == other.canonical_reference

    def __hash__(self) -> int:
        return hash(self.canonical_reference)

    def __str__(self) -> str:
        return self.canonical_reference


class ValidationKind(Enum):
    OK = "ok"
    NO_MATCH = "no_match"
    UNKNOWN_BOOK = "unknown_book"
    CHAPTER_OUT_OF_RANGE = "chapter_out_of_range"
    VERSE_OUT_OF_RANGE = "verse_out_of_range"
    BAD_RANGE = "bad_range"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    kind: ValidationKind = ValidationKind.OK
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def invalid(cls, kind: ValidationKind, reason: str) -> "ValidationResult":
        return cls(valid=False, kind=kind, reason=reason)

    def __bool__(self) -> bool:
        return self.valid


class ParseOutcome(Enum):
    NO_MATCH = "no_match"   # nothing that looks like a reference
    INVALID = "invalid"     # looks like a reference but violates canonical bounds
    VALID = "valid"


@dataclass(frozen=True)
class ParseResult:
    outcome: ParseOutcome
    reference: Optional[Reference] = None
    reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.outcome is ParseOutcome.VALID


# -----------------------------------------------------------------------------
# Patterns
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ReferencePattern:
    """
    One reference form. The regex matches the numeric tail of a reference;
    the book name is resolved from the words immediately before the match.
    """
    name: str
    regex: re.Pattern
    chapter_only: bool = False


# Ordered from most to least specific
PATTERNS = [
    ReferencePattern(
        "verse_range",
        re.compile(
            r"(?<![\d:.])(?P<chapter>\d{1,3})(?:\s*:\s*|\.)(?P<verse_start>\d{1,3})"
            r"\s*-\s*(?P<verse_end>\d{1,3})(?![\d:])"
        ),
    ),
    ReferencePattern(
        "verse",
        re.compile(
            r"(?<![\d:.])(?P<chapter>\d{1,3})(?:\s*:\s*|\.)(?P<verse_start>\d{1,3})(?![\d:])"
        ),
    ),
    ReferencePattern(
        "chapter_keyword",
        re.compile(r"\b(?:chapter|chap\.?|ch\.)\s*(?P<chapter>\d{1,3})(?![\d:])", re.IGNORECASE),
        chapter_only=True,
    ),
    ReferencePattern(
        "chapter",
        re.compile(r"(?<![\d:.\-])(?P<chapter>\d{1,3})(?!\d|[:.]\d)"),
        chapter_only=True,
    ),
]


class ReferenceParser:
    """
    Parses free text into References and validates them against the
    canonical book/chapter/verse bounds.

    Stateless; one instance can be shared by every component.
    """

    def __init__(self, patterns: Optional[List[ReferencePattern]] = None):
        self.patterns = patterns or PATTERNS

    # ---- parsing ----

    def parse(self, text: str) -> Optional[Reference]:
        """Parse a single reference such as "see 1 Cor. 13:4-7". Returns None on no match."""
        if not text or not text.strip():
            return None

        normalized = _LEAD_IN_RE.sub("", self._normalize(text))
        hits = self._scan(normalized, fuzzy_chapters=True)
        if not hits:
            return None

        ref = hits[0]
        return Reference(
            raw_input=text.strip(),
            book_id=ref.book_id,
            book_display_name=ref.book_display_name,
            chapter=ref.chapter,
            verse_start=ref.verse_start,
            verse_end=ref.verse_end,
        )

    def parse_all(self, text: str) -> List[Reference]:
        """
        Find every reference in a block of text.

        Returns references in order of first appearance, de-duplicated by
        canonical string. Spans claimed by a more specific pattern are not
        matched again by a later one.
        """
        if not text:
            return []

        refs = []
        seen = set()
        for ref in self._scan(self._normalize(text), fuzzy_chapters=False):
            if ref.canonical_reference in seen:
                continue
            seen.add(ref.canonical_reference)
            refs.append(ref)
        return refs

    # ---- validation ----

    def validate(self, reference: Reference) -> ValidationResult:
        count = CHAPTER_COUNTS.get(reference.book_id)
        if count is None:
            return ValidationResult.invalid(ValidationKind.UNKNOWN_BOOK, "Unknown book")

        if reference.chapter < 1 or reference.chapter > count:
            name = BOOK_DISPLAY_NAMES.get(reference.book_id, reference.book_display_name)
            return ValidationResult.invalid(
                ValidationKind.CHAPTER_OUT_OF_RANGE,
                f"Invalid chapter number. {name} has {count} chapters.",
            )

        if reference.verse_start is not None:
            # Psalm 119 has 176 verses; anything above MAX_VERSE is fabricated
            if reference.verse_start < 1 or reference.verse_start > MAX_VERSE:
                return ValidationResult.invalid(ValidationKind.VERSE_OUT_OF_RANGE, "Invalid verse number")

            if reference.verse_end is not None:
                if reference.verse_end < reference.verse_start:
                    return ValidationResult.invalid(
                        ValidationKind.BAD_RANGE, "End verse cannot be before start verse"
                    )
                if reference.verse_end > MAX_VERSE:
                    return ValidationResult.invalid(ValidationKind.VERSE_OUT_OF_RANGE, "Invalid verse range")

        return ValidationResult.ok()

    def parse_and_validate(self, text: str) -> ParseResult:
        ref = self.parse(text)
        if ref is None:
            return ParseResult(ParseOutcome.NO_MATCH, reason="Could not parse reference")

        result = self.validate(ref)
        if not result.valid:
            return ParseResult(ParseOutcome.INVALID, reference=ref, reason=result.reason)
        return ParseResult(ParseOutcome.VALID, reference=ref)

    def validate_citation(self, text: str) -> ValidationResult:
        """Parse and validate a raw citation string."""
        result = self.parse_and_validate(text)
        if result.outcome is ParseOutcome.NO_MATCH:
            return ValidationResult.invalid(ValidationKind.NO_MATCH, result.reason)
        if result.outcome is ParseOutcome.INVALID:
            return self.validate(result.reference)
        return ValidationResult.ok()

    def filter_valid(self, references: List[str]) -> List[str]:
        """Drop citation strings that do not parse or fall outside canonical bounds."""
        kept = []
        for ref in references:
            result = self.validate_citation(ref)
            if not result.valid:
                logger.info(f"Filtering out invalid citation '{ref}': {result.reason}")
                continue
            kept.append(ref)
        return kept

    # ---- internals ----

    @staticmethod
    def _normalize(text: str) -> str:
        text = _DASHES_RE.sub("-", text)
        return re.sub(r"[ \t\r\f\v]+", " ", text)

    def _scan(self, text: str, fuzzy_chapters: bool) -> List[Reference]:
        claimed: List[Tuple[int, int]] = []
        found: List[Tuple[int, Reference]] = []

        for pattern in self.patterns:
            fuzzy = fuzzy_chapters or not pattern.chapter_only
            for match in pattern.regex.finditer(text):
                hit = self._book_before(text, match.start(), fuzzy)
                if hit is None:
                    continue
                book_id, start = hit
                end = match.end()
                if any(s < end and start < e for s, e in claimed):
                    continue
                claimed.append((start, end))

                groups = match.groupdict()
                verse_start = groups.get("verse_start")
                verse_end = groups.get("verse_end")
                found.append((
                    start,
                    Reference(
                        raw_input=text[start:end],
                        book_id=book_id,
                        book_display_name=BOOK_DISPLAY_NAMES[book_id],
                        chapter=int(groups["chapter"]),
                        verse_start=int(verse_start) if verse_start else None,
                        verse_end=int(verse_end) if verse_end else None,
                    ),
                ))

        found.sort(key=lambda item: item[0])
        return [ref for _, ref in found]

    def _book_before(self, text: str, end: int, fuzzy: bool) -> Optional[Tuple[str, int]]:
        """
        Resolve the book name that ends right before position `end`.

        Tries the longest run of up to MAX_BOOK_WORDS words first, so
        "Song of Songs 2" wins over "Songs 2". Stops at punctuation, an
        opening bracket or a lead-in word.

        Returns:
            (OSIS code, start offset of the book name) or None
        """
        window_start = max(0, end - BOOK_WINDOW)
        window = text[window_start:end]
        chunks = list(_WORD_RE.finditer(window))
        # First chunk may be cut mid-word
        if window_start > 0 and chunks and chunks[0].start() == 0:
            chunks = chunks[1:]

        words: List[Tuple[str, int]] = []
        for chunk in reversed(chunks[-MAX_BOOK_WORDS:]):
            m = _BOOK_WORD_RE.fullmatch(chunk.group())
            if not m or m.group("word").lower() in LEAD_IN_WORDS:
                break
            words.insert(0, (m.group("word"), window_start + chunk.start() + m.start("word")))
            if m.start("word") > 0:
                break

        for i in range(len(words)):
            candidate = " ".join(word for word, _ in words[i:])
            if candidate.lower() in AMBIGUOUS_ALIASES and not candidate[0].isupper():
                continue
            book_id = normalize_book_name(candidate, fuzzy=fuzzy)
            if book_id:
                return book_id, words[i][1]
        return None
