"""Presidio oracle — local NER-based detection.

Catches names, locations and other entities without calling a hosted
model.  Uses spaCy under the hood; the engine is loaded on first use.
"""

from __future__ import annotations
from typing import TYPE_CHECKING

from .types import PiiCategory, PiiItem

if TYPE_CHECKING:
    from presidio_analyzer import AnalyzerEngine

# Lazy singleton — don't load spaCy until first use
_engine: AnalyzerEngine | None = None
_engine_lang: str = ""


def _get_engine(language: str = "en") -> AnalyzerEngine:
    """Lazy-init the Presidio analyzer engine."""
    global _engine, _engine_lang
    if _engine is None or _engine_lang != language:
        from presidio_analyzer import AnalyzerEngine
        from presidio_analyzer.nlp_engine import NlpEngineProvider

        provider = NlpEngineProvider(nlp_configuration={
            "nlp_engine_name": "spacy",
            "models": [{"lang_code": language, "model_name": f"{language}_core_web_sm"}],
        })
        nlp_engine = provider.create_engine()
        _engine = AnalyzerEngine(nlp_engine=nlp_engine, supported_languages=[language])
        _engine_lang = language
    return _engine


# Presidio entity type → our category
ENTITY_CATEGORIES: dict[str, PiiCategory] = {
    "PERSON": "name",
    "PHONE_NUMBER": "phone",
    "EMAIL_ADDRESS": "email",
    "LOCATION": "address",
    "US_SSN": "id_number",
    "US_PASSPORT": "id_number",
    "US_DRIVER_LICENSE": "id_number",
    "UK_NHS": "id_number",
    "IBAN_CODE": "account_number",
    "US_BANK_NUMBER": "account_number",
    "CREDIT_CARD": "credit_card",
    "CRYPTO": "account_number",
    "IP_ADDRESS": "other_pii",
}

DEFAULT_ENTITIES = list(ENTITY_CATEGORIES)


def scan_presidio(
    text: str,
    *,
    language: str = "en",
    entities: list[str] | None = None,
    score_threshold: float = 0.35,
) -> list[PiiItem]:
    """Run Presidio analysis on text.

    Args:
        text: Input text to scan.
        language: ISO language code.
        entities: Presidio entity types to detect (None = DEFAULT_ENTITIES).
        score_threshold: Minimum confidence score.
    """
    engine = _get_engine(language)
    results = engine.analyze(
        text=text,
        language=language,
        entities=entities or DEFAULT_ENTITIES,
        score_threshold=score_threshold,
    )

    items: list[PiiItem] = []
    seen: set[tuple[str, str]] = set()
    for r in sorted(results, key=lambda r: r.start):
        phrase = text[r.start:r.end]
        category = ENTITY_CATEGORIES.get(r.entity_type, "other_pii")
        if not phrase.strip() or (phrase, category) in seen:
            continue
        seen.add((phrase, category))
        items.append(PiiItem(text=phrase, category=category))
    return items
