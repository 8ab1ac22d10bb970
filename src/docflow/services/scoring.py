"""Document relevance scoring for council members.

Scores combine four components, each 0..100:

* type: base weight of the document type (budget acts outrank news),
* relevance: council keywords (+5 each) and the council location (+15),
* urgency: urgency keywords (+10 each) plus an upcoming-session bonus,
* recency: how recently the document was published or processed.

The total is ``type*0.3 + relevance*0.35 + urgency*0.2 + recency*0.15`` rounded half up.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from docflow.store.document_store import DocumentStore

LOGGER = logging.getLogger(__name__)

TYPE_WEIGHTS: Dict[str, int] = {
    "budget_act": 100,
    "resolution": 95,
    "session_order": 90,
    "resolution_project": 85,
    "protocol": 80,
    "interpellation": 75,
    "transcription": 70,
    "video": 65,
    "committee_opinion": 60,
    "justification": 55,
    "session": 50,
    "session_materials": 50,
    "order": 40,
    "announcement": 30,
    "attachment": 20,
    "pdf_attachment": 20,
    "reference_material": 15,
    "other": 10,
    "news": 10,
    "article": 10,
}

PRIORITY_KEYWORDS = (
    "sesja rady",
    "sesji rady",
    "posiedzenie",
    "głosowanie",
    "uchwała",
    "projekt uchwały",
    "budżet",
    "komisja",
    "interpelacja",
    "wniosek",
    "radny",
    "radnego",
    "rada miejska",
    "rada gminy",
    "burmistrz",
    "wójt",
    "zarządzenie",
    "porządek obrad",
    "terminy",
    "sesja nadzwyczajna",
    "zwołanie sesji",
)

URGENCY_KEYWORDS = (
    "pilne",
    "nadzwyczajn",
    "termin",
    "do dnia",
    "najpóźniej",
    "natychmiast",
    "bezzwłoczn",
    "deadline",
)

# (max age in hours, bonus)
RECENCY_TIERS = ((24, 25), (72, 20), (168, 15), (720, 10), (2160, 5))

SESSION_DATE_PATTERN = re.compile(r"sesj[ai].*?(\d{1,2})[.\-/](\d{1,2})[.\-/](\d{2,4})", re.IGNORECASE)
SESSION_NUMBER_PATTERNS = (
    re.compile(r"sesj[iaęy]\s+(?:nr\.?\s*)?(\d+)", re.IGNORECASE),
    re.compile(r"sesj[iaęy]\s+(?:nr\.?\s*)?([IVXLC]+)\b", re.IGNORECASE),
    re.compile(r"(\d+)\s*sesj", re.IGNORECASE),
    re.compile(r"\b([IVXLC]+)\s*sesj", re.IGNORECASE),
)

_ROMAN_VALUES = {"I": 1, "V": 5, "X": 10, "L": 50, "C": 100}
_ROMAN_NUMERALS = ((100, "C"), (90, "XC"), (50, "L"), (40, "XL"), (10, "X"), (9, "IX"), (5, "V"), (4, "IV"), (1, "I"))

_TITLE_REWRITES = (
    (re.compile(r"\s*\|.*$"), ""),
    (re.compile(r"\s*-?\s*System\s+Rada.*$", re.IGNORECASE), ""),
    (re.compile(r"\s*-?\s*BIP\s*.*$", re.IGNORECASE), ""),
    (re.compile(r"\bresolution\s+nr\b", re.IGNORECASE), "Uchwała nr"),
    (re.compile(r"\bresolution\b", re.IGNORECASE), "Uchwała"),
    (re.compile(r"\bprotocol\s+nr\b", re.IGNORECASE), "Protokół nr"),
    (re.compile(r"\bprotocol\b", re.IGNORECASE), "Protokół"),
    (re.compile(r"\bdraft\s+nr\b", re.IGNORECASE), "Projekt nr"),
    (re.compile(r"\bdraft\b", re.IGNORECASE), "Projekt"),
    (re.compile(r"\battachment\b", re.IGNORECASE), "Załącznik"),
    (re.compile(r"\bsession\b", re.IGNORECASE), "Sesja"),
    (re.compile(r"\bannouncement\b", re.IGNORECASE), "Ogłoszenie"),
    (re.compile(r"\s+"), " "),
)


@dataclass(slots=True)
class DocumentScore:
    relevance_score: int
    urgency_score: int
    type_score: int
    recency_score: int
    total_score: int
    priority: str
    scoring_details: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def roman_to_arabic(roman: str) -> int:
    result = 0
    previous = 0
    for char in reversed(roman.upper()):
        current = _ROMAN_VALUES.get(char, 0)
        result += -current if current < previous else current
        previous = current
    return result


def arabic_to_roman(number: int) -> str:
    parts = []
    for value, numeral in _ROMAN_NUMERALS:
        while number >= value:
            parts.append(numeral)
            number -= value
    return "".join(parts)


def extract_session_number(query: str) -> Optional[int]:
    """Return a council session number (1..200) mentioned in ``query``."""

    for pattern in SESSION_NUMBER_PATTERNS:
        match = pattern.search(query)
        if not match:
            continue
        value = match.group(1)
        number = int(value) if value.isdigit() else roman_to_arabic(value)
        if 0 < number <= 200:
            return number
    return None


def normalize_title(title: str | None) -> str:
    """Strip portal suffixes and translate English document labels to Polish."""

    if not title:
        return "Bez tytułu"
    for pattern, replacement in _TITLE_REWRITES:
        title = pattern.sub(replacement, title)
    return title.strip()


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DocumentScorer:
    """Score processed documents and list them ordered by importance."""

    def __init__(self, council_location: str = "Drawno", *, documents: DocumentStore | None = None) -> None:
        self.council_location = council_location
        self._documents = documents

    def calculate_score(self, document: Mapping[str, Any], *, now: datetime | None = None) -> DocumentScore:
        now = now or datetime.now(timezone.utc)
        title = (document.get("title") or "").lower()
        content = (document.get("content") or "").lower()[:5000]
        text = f"{title} {content}"

        type_score = TYPE_WEIGHTS.get(document.get("document_type") or "other", TYPE_WEIGHTS["other"])

        keyword_bonus = sum(5 for keyword in PRIORITY_KEYWORDS if keyword in text)
        if self.council_location.lower() in text:
            keyword_bonus += 15
        relevance_score = min(100, keyword_bonus)

        urgency_bonus = sum(10 for keyword in URGENCY_KEYWORDS if keyword in text)
        session_bonus = self._session_bonus(text, now)
        urgency_score = min(100, urgency_bonus + session_bonus)

        recency_score = 0
        published = _parse_datetime(document.get("publish_date")) or _parse_datetime(document.get("processed_at"))
        if published is not None:
            age_hours = (now - published).total_seconds() / 3600
            for max_hours, bonus in RECENCY_TIERS:
                if age_hours <= max_hours:
                    recency_score = bonus
                    break

        weighted = type_score * 0.3 + relevance_score * 0.35 + urgency_score * 0.2 + recency_score * 0.15
        total_score = math.floor(weighted + 0.5)
        if total_score >= 70 or urgency_score >= 50:
            priority = "critical"
        elif total_score >= 50:
            priority = "high"
        elif total_score >= 30:
            priority = "medium"
        else:
            priority = "low"

        return DocumentScore(
            relevance_score=relevance_score,
            urgency_score=urgency_score,
            type_score=type_score,
            recency_score=recency_score,
            total_score=total_score,
            priority=priority,
            scoring_details={
                "type_bonus": type_score,
                "keyword_bonus": keyword_bonus,
                "session_bonus": session_bonus,
                "recency_bonus": recency_score,
            },
        )

    @staticmethod
    def _session_bonus(text: str, now: datetime) -> int:
        match = SESSION_DATE_PATTERN.search(text)
        if not match:
            return 0
        day, month, year = (int(part) for part in match.groups())
        if year < 100:
            year += 2000
        try:
            session_day = date(year, month, day)
        except ValueError:
            return 0
        days_until = (session_day - now.date()).days
        if 0 <= days_until <= 7:
            return 30
        if 7 < days_until <= 14:
            return 20
        return 0

    def get_documents_with_scores(
        self,
        user_id: str,
        *,
        search: str | None = None,
        document_type: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        priority: str | None = None,
        sort_by: str = "score",
        sort_order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Filter, score, sort and paginate a user's processed documents."""

        if self._documents is None:
            self._documents = DocumentStore()
        rows = self._documents.list_documents(user_id=user_id, document_type=document_type, limit=10_000)

        if search:
            rows = [row for row in rows if self._matches_search(row, search)]
        lower = _parse_datetime(date_from) if date_from else None
        upper = _parse_datetime(f"{date_to}T23:59:59") if date_to else None
        if lower or upper:
            rows = [row for row in rows if self._within_dates(row, lower, upper)]

        scored = [
            {**row, "title": normalize_title(row.get("title")), "score": self.calculate_score(row).to_dict()}
            for row in rows
        ]
        if priority:
            scored = [row for row in scored if row["score"]["priority"] == priority]

        descending = sort_order != "asc"
        if sort_by == "date":
            epoch = datetime.min.replace(tzinfo=timezone.utc)
            scored.sort(
                key=lambda row: _parse_datetime(row.get("publish_date"))
                or _parse_datetime(row.get("processed_at"))
                or epoch,
                reverse=descending,
            )
        elif sort_by == "title":
            scored.sort(key=lambda row: (row.get("title") or "").casefold(), reverse=descending)
        else:
            scored.sort(key=lambda row: row["score"]["total_score"], reverse=descending)

        LOGGER.debug("Scored %s documents for user %s", len(scored), user_id)
        return {"documents": scored[offset : offset + limit], "total": len(scored)}

    @staticmethod
    def _matches_search(row: Mapping[str, Any], search: str) -> bool:
        title = (row.get("title") or "").lower()
        session_number = extract_session_number(search)
        if session_number:
            roman = arabic_to_roman(session_number).lower()
            candidates = (
                f"sesja {session_number}",
                f"sesja nr {session_number}",
                f"sesja {roman}",
                f"nr {roman}",
            )
            return any(candidate in title for candidate in candidates)
        needle = search.strip().lower()
        return needle in title or needle in (row.get("content") or "").lower()

    @staticmethod
    def _within_dates(row: Mapping[str, Any], lower: datetime | None, upper: datetime | None) -> bool:
        moment = _parse_datetime(row.get("publish_date")) or _parse_datetime(row.get("processed_at"))
        if moment is None:
            return False
        if lower and moment < lower:
            return False
        if upper and moment > upper:
            return False
        return True


__all__ = [
    "DocumentScore",
    "DocumentScorer",
    "PRIORITY_KEYWORDS",
    "TYPE_WEIGHTS",
    "URGENCY_KEYWORDS",
    "arabic_to_roman",
    "extract_session_number",
    "normalize_title",
    "roman_to_arabic",
]
