"""Analysis context building and prompt generation for council documents."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from docflow.store.document_store import DocumentStore

LOGGER = logging.getLogger(__name__)

_DRUK_PATTERN = re.compile(r"(?:druk(?:i)?\s*(?:nr|numer)?\s*)([\d,\s]+)", re.IGNORECASE)
_DRUK_SINGLE_PATTERN = re.compile(r"\(\s*druk\s*(?:nr|numer)?\s*(\d+)\s*\)", re.IGNORECASE)
_RESOLUTION_PATTERN = re.compile(
    r"(?:uchwał[ay]?\s*(?:nr|numer)?\s*)([IVXLCDM]+/\d+/\d+|\d+/\d+/\d+)", re.IGNORECASE
)
_ATTACHMENT_PATTERN = re.compile(r"(?:załącznik(?:i)?\s*(?:nr|numer)?\s*)([\d,\s]+)", re.IGNORECASE)
_NUMBER_SPLIT = re.compile(r"[,\s]+")

REFERENCE_CONTENT_LIMIT = 4000

SYSTEM_PROMPT = """Jesteś profesjonalnym analitykiem dokumentów samorządowych z wieloletnim doświadczeniem. Twoja analiza musi być:
- DOKŁADNA - analizuj każdy punkt dokumentu szczegółowo
- KOMPLETNA - uwzględnij wszystkie druki, załączniki i referencje
- KRYTYCZNA - wskazuj wady, zalety i potencjalne zagrożenia
- PROFESJONALNA - używaj właściwej terminologii prawnej i administracyjnej
- PRAKTYCZNA - dawaj konkretne rekomendacje do działania

WAŻNE ZASADY:
1. Analizuj CAŁY dokument, punkt po punkcie, nie pomijaj żadnego
2. Dla każdego druku/załącznika wskazuj jego znaczenie i konsekwencje
3. Jeśli brakuje treści druku - zaznacz to wyraźnie jako BRAK DANYCH
4. Uwzględniaj kontekst prawny, procedury samorządowe i możliwe konsekwencje
5. Zwracaj uwagę na terminy, kwoty, osoby odpowiedzialne
6. Identyfikuj potencjalne zagrożenia, ryzyka i korzyści
7. Proponuj konkretne rozwiązania i usprawnienia

FORMAT ODPOWIEDZI (OBOWIĄZKOWY):
## 1. Streszczenie wykonawcze
[2-3 zdania z najważniejszymi punktami]

## 2. Analiza szczegółowa
[Każdy punkt porządku obrad/dokumentu osobno z numeracją]

## 3. Druki i załączniki
[Omów znaczenie każdego druku, jego cel i konsekwencje]

## 4. Analiza zagrożeń - wady i zalety
[Identyfikuj ryzyka, korzyści, potencjalne problemy]

## 5. Wnioski i rekomendacje
[Co można zrobić lepiej, konkretne propozycje rozwiązań]

## 6. Podsumowanie
[Końcowa synteza dokumentu]"""

TASK_INSTRUCTIONS = """### Zadanie:
Przeprowadź **profesjonalną, wyczerpującą analizę** tego dokumentu zgodnie z wymaganym formatem:

1. **Streszczenie wykonawcze** - najważniejsze punkty w 2-3 zdaniach
2. **Analiza szczegółowa** - każdy punkt porządku obrad/dokumentu osobno (nie pomijaj żadnego!)
3. **Druki i załączniki** - omów znaczenie, cel i konsekwencje każdego druku
4. **Analiza zagrożeń - wady i zalety** - zidentyfikuj ryzyka, korzyści, potencjalne problemy
5. **Wnioski i rekomendacje** - co można zrobić lepiej, zaproponuj konkretne rozwiązania
6. **Podsumowanie** - końcowa synteza dokumentu

WAŻNE: Odpowiedź musi być w języku polskim, profesjonalna, wyczerpująca i zawierać WSZYSTKIE 6 sekcji."""


@dataclass(slots=True)
class DocumentReference:
    """A druk, resolution or attachment cited inside a document."""

    type: str
    number: str
    found: bool = False
    title: Optional[str] = None
    content: Optional[str] = None
    source_url: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.type} nr {self.number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "number": self.number,
            "found": self.found,
            "title": self.title,
            "source_url": self.source_url,
        }


@dataclass(slots=True)
class AnalysisContext:
    main_document: Dict[str, Any]
    references: List[DocumentReference] = field(default_factory=list)
    additional_context: List[str] = field(default_factory=list)
    missing_references: List[str] = field(default_factory=list)


@dataclass(slots=True)
class AnalysisPrompt:
    context: AnalysisContext
    prompt: str
    system_prompt: str


def extract_references(content: str) -> List[DocumentReference]:
    """Find druk, resolution and attachment numbers cited in ``content``."""

    references: List[DocumentReference] = []
    seen: set[tuple[str, str]] = set()

    def _add(ref_type: str, number: str) -> None:
        number = number.strip()
        if number and (ref_type, number) not in seen:
            seen.add((ref_type, number))
            references.append(DocumentReference(type=ref_type, number=number))

    for match in _DRUK_PATTERN.finditer(content):
        for number in _NUMBER_SPLIT.split(match.group(1)):
            _add("druk", number)
    for match in _DRUK_SINGLE_PATTERN.finditer(content):
        _add("druk", match.group(1))
    for match in _RESOLUTION_PATTERN.finditer(content):
        _add("resolution", match.group(1))
    for match in _ATTACHMENT_PATTERN.finditer(content):
        for number in _NUMBER_SPLIT.split(match.group(1)):
            _add("attachment", number)
    return references


def build_search_query(reference: DocumentReference) -> str:
    if reference.type == "druk":
        return f"druk numer {reference.number} projekt uchwały załącznik"
    if reference.type == "resolution":
        return f"uchwała numer {reference.number}"
    if reference.type == "protocol":
        return f"protokół sesji numer {reference.number}"
    if reference.type == "attachment":
        return f"załącznik numer {reference.number}"
    return f"{reference.type} {reference.number}"


def matches_reference(document: Mapping[str, Any], reference: DocumentReference) -> bool:
    title = (document.get("title") or "").lower()
    content = (document.get("content") or "").lower()
    number = reference.number.lower()
    if reference.type == "druk":
        needles = (f"druk {number}", f"druk nr {number}")
        return any(needle in title or needle in content for needle in needles)
    return number in title or number in content


class DocumentAnalysisService:
    """Resolve references for a document and turn them into analysis prompts."""

    def __init__(self, *, documents: DocumentStore | None = None) -> None:
        self._documents = documents or DocumentStore()

    def search_references(self, user_id: str, document_id: str, references: List[DocumentReference]) -> None:
        """Mark references found in the user's corpus and attach their content."""

        for reference in references:
            LOGGER.debug("Looking up %s (%s)", reference.label, build_search_query(reference))
            candidates = self._documents.search_documents(
                user_id=user_id, query=reference.number, exclude_id=document_id, limit=10
            )
            match = next((doc for doc in candidates if matches_reference(doc, reference)), None)
            if match is None:
                continue
            reference.found = True
            reference.title = match.get("title")
            reference.content = (match.get("content") or "")[:REFERENCE_CONTENT_LIMIT]
            reference.source_url = match.get("source_url")

    def build_analysis_context(self, user_id: str, document_id: str) -> Optional[AnalysisContext]:
        document = self._documents.get_document(document_id, user_id=user_id)
        if document is None:
            return None
        references = extract_references(document.get("content") or "")
        LOGGER.info("Found %s references in document %s", len(references), document_id)
        self.search_references(user_id, document_id, references)

        additional_context = [
            f"### {ref.type.upper()} {ref.number}{f' - {ref.title}' if ref.title else ''}\n{ref.content}"
            for ref in references
            if ref.found and ref.content
        ]
        missing = [ref.label for ref in references if not ref.found]
        return AnalysisContext(
            main_document={
                "id": document["document_id"],
                "title": document.get("title") or "",
                "content": document.get("content") or "",
                "document_type": document.get("document_type") or "other",
                "publish_date": document.get("publish_date"),
                "source_url": document.get("source_url"),
                "summary": document.get("summary"),
                "keywords": document.get("keywords") or [],
            },
            references=references,
            additional_context=additional_context,
            missing_references=missing,
        )

    @staticmethod
    def generate_analysis_prompt(context: AnalysisContext) -> AnalysisPrompt:
        main = context.main_document
        sections = [
            f'## ANALIZA DOKUMENTU: "{main["title"]}"\n\n'
            "### Informacje podstawowe:\n"
            f"- **Typ dokumentu:** {main['document_type']}\n"
            f"- **Data publikacji:** {main.get('publish_date') or 'brak danych'}\n"
            f"- **Źródło:** {main.get('source_url') or 'brak'}\n\n"
            "### Treść dokumentu do analizy:\n"
            f"```\n{main['content']}\n```\n\n"
        ]
        if context.additional_context:
            sections.append(
                "### Znalezione druki i załączniki (kontekst):\n" + "\n\n".join(context.additional_context) + "\n\n"
            )
        if context.missing_references:
            missing = "\n".join(f"- {label}" for label in context.missing_references)
            sections.append(
                "### UWAGA - Brakujące dokumenty:\n"
                "Następujące druki/załączniki wymienione w dokumencie NIE zostały znalezione w bazie:\n"
                f"{missing}\n\n"
                "Proszę o analizę z zaznaczeniem, że pełny kontekst tych druków nie jest dostępny.\n\n"
            )
        sections.append(TASK_INSTRUCTIONS)
        return AnalysisPrompt(context=context, prompt="".join(sections), system_prompt=SYSTEM_PROMPT)


__all__ = [
    "AnalysisContext",
    "AnalysisPrompt",
    "DocumentAnalysisService",
    "DocumentReference",
    "SYSTEM_PROMPT",
    "build_search_query",
    "extract_references",
    "matches_reference",
]
