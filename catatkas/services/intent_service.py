import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Mapping, Optional, Protocol

from rapidfuzz.distance import JaroWinkler, Levenshtein

from catatkas.logging_config import get_logger

logger = get_logger("intent_service")

CONFIDENCE_THRESHOLD = 0.7
SUGGESTION_MIN_CONFIDENCE = 0.3
DEFAULT_FUZZY_THRESHOLD = 0.4
DEFAULT_MIN_MATCH_LENGTH = 2
LATENCY_TARGET_MS = 100

EXACT_CONFIDENCE = 1.0
ABBREVIATION_CONFIDENCE = 0.95
SYNONYM_CONFIDENCE = 0.9


class Intent(str, Enum):
    RECORD_SALE = "catat_penjualan"
    RECORD_EXPENSE = "catat_pengeluaran"
    VIEW_REPORT_TODAY = "lihat_laporan_hari_ini"
    VIEW_REPORT_WEEK = "lihat_laporan_minggu_ini"
    VIEW_REPORT_MONTH = "lihat_laporan_bulan_ini"
    VIEW_BALANCE = "lihat_saldo"
    CHECK_BALANCE = "cek_saldo"
    HELP = "bantu"
    MENU = "menu"


class CandidateSource(str, Enum):
    CANONICAL = "canonical"
    SYNONYM = "synonym"
    ABBREVIATION = "abbreviation"


COMMAND_SYNONYMS: dict[str, Intent] = {
    "tambah": Intent.RECORD_SALE,
    "input": Intent.RECORD_SALE,
    "masukkan": Intent.RECORD_SALE,
    "record sale": Intent.RECORD_SALE,
    "tambah penjualan": Intent.RECORD_SALE,
    "input penjualan": Intent.RECORD_SALE,
    "catat pengeluaran": Intent.RECORD_EXPENSE,
    "tambah pengeluaran": Intent.RECORD_EXPENSE,
    "input pengeluaran": Intent.RECORD_EXPENSE,
    "record expense": Intent.RECORD_EXPENSE,
    "laporan": Intent.VIEW_REPORT_TODAY,
    "report": Intent.VIEW_REPORT_TODAY,
    "lihat report": Intent.VIEW_REPORT_TODAY,
    "view report": Intent.VIEW_REPORT_TODAY,
    "saldo": Intent.VIEW_BALANCE,
    "balance": Intent.VIEW_BALANCE,
    "cek saldo": Intent.CHECK_BALANCE,
    "check balance": Intent.CHECK_BALANCE,
    "bantuan": Intent.HELP,
    "tolong": Intent.HELP,
    "help": Intent.HELP,
}

COMMAND_ABBREVIATIONS: dict[str, Intent] = {
    "cp": Intent.RECORD_SALE,  # catat penjualan
    "ll": Intent.VIEW_REPORT_TODAY,  # lihat laporan
}

INTENT_DESCRIPTIONS: dict[Intent, str] = {
    Intent.RECORD_SALE: "Catat penjualan",
    Intent.RECORD_EXPENSE: "Catat pengeluaran",
    Intent.VIEW_REPORT_TODAY: "Lihat laporan hari ini",
    Intent.VIEW_REPORT_WEEK: "Lihat laporan minggu ini",
    Intent.VIEW_REPORT_MONTH: "Lihat laporan bulan ini",
    Intent.VIEW_BALANCE: "Lihat saldo",
    Intent.CHECK_BALANCE: "Cek saldo",
    Intent.HELP: "Bantuan",
    Intent.MENU: "Menu",
}

_REPORT_INTENTS = [Intent.VIEW_REPORT_TODAY, Intent.VIEW_REPORT_WEEK, Intent.VIEW_REPORT_MONTH]
_RECORD_INTENTS = [Intent.RECORD_SALE, Intent.RECORD_EXPENSE]
_COMMON_INTENTS = [Intent.VIEW_BALANCE, Intent.HELP, Intent.MENU]

ROLE_INTENTS: dict[str, frozenset[Intent]] = {
    "employee": frozenset(Intent),
    "boss": frozenset(Intent),
    "dev": frozenset(Intent),
    "investor": frozenset(_REPORT_INTENTS + _COMMON_INTENTS),
}


class SimilarityScorer(Protocol):
    def score(self, query: str, candidate: str) -> float:
        """Similarity in [0, 1]; 1 means identical."""
        ...


class LevenshteinScorer:
    def score(self, query: str, candidate: str) -> float:
        return Levenshtein.normalized_similarity(query, candidate)


class JaroWinklerScorer:
    def score(self, query: str, candidate: str) -> float:
        return JaroWinkler.normalized_similarity(query, candidate)


@dataclass(frozen=True)
class CandidateEntry:
    intent: Intent
    text: str
    source: CandidateSource


@dataclass
class ParsedCommand:
    raw_text: str
    recognized_intent: Intent
    confidence: float
    matched_alias: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class CommandSuggestion:
    intent: Intent
    description: str
    confidence: float


def build_candidates(
    intents: Iterable[Intent],
    synonyms: Mapping[str, Intent],
    abbreviations: Mapping[str, Intent],
) -> tuple[CandidateEntry, ...]:
    candidates = [
        CandidateEntry(intent=intent, text=intent.value.replace("_", " ").lower(), source=CandidateSource.CANONICAL)
        for intent in intents
    ]
    candidates.extend(
        CandidateEntry(intent=intent, text=text.lower(), source=CandidateSource.SYNONYM)
        for text, intent in synonyms.items()
    )
    candidates.extend(
        CandidateEntry(intent=intent, text=text.lower(), source=CandidateSource.ABBREVIATION)
        for text, intent in abbreviations.items()
    )
    return tuple(candidates)


def describe(intent: Intent) -> str:
    return INTENT_DESCRIPTIONS.get(intent, intent.value)


def is_intent_allowed(intent: Intent, role: Optional[str]) -> bool:
    if not role:
        return False
    return intent in ROLE_INTENTS.get(role, frozenset())


def should_auto_execute(confidence: float, threshold: float = CONFIDENCE_THRESHOLD) -> bool:
    """Commands at or above the threshold run without asking the user first."""
    return confidence >= threshold


class CommandInterpreter:
    """Turns raw chat text into an intent with a confidence score.

    The candidate list is built once from the canonical intents, the synonym
    table and the abbreviation table. Build a new interpreter if any of those
    tables change.
    """

    def __init__(
        self,
        *,
        scorer: Optional[SimilarityScorer] = None,
        synonyms: Optional[Mapping[str, Intent]] = None,
        abbreviations: Optional[Mapping[str, Intent]] = None,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        min_match_length: int = DEFAULT_MIN_MATCH_LENGTH,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        suggestion_min_confidence: float = SUGGESTION_MIN_CONFIDENCE,
    ):
        self.scorer = scorer or LevenshteinScorer()
        self.synonyms = {k.lower(): v for k, v in (COMMAND_SYNONYMS if synonyms is None else synonyms).items()}
        self.abbreviations = {
            k.lower(): v for k, v in (COMMAND_ABBREVIATIONS if abbreviations is None else abbreviations).items()
        }
        self.fuzzy_threshold = fuzzy_threshold
        self.min_match_length = min_match_length
        self.confidence_threshold = confidence_threshold
        self.suggestion_min_confidence = suggestion_min_confidence

        self.candidates = build_candidates(Intent, self.synonyms, self.abbreviations)
        self._canonical = {c.text: c for c in self.candidates if c.source == CandidateSource.CANONICAL}

    @staticmethod
    def _normalize(raw_text) -> str:
        if not isinstance(raw_text, str):
            return ""
        return raw_text.strip().lower()

    def _rank(self, query: str) -> list[tuple[CandidateEntry, float]]:
        """Candidates within the fuzzy threshold, best first, ties in candidate order."""
        if len(query) < self.min_match_length:
            return []
        scored = []
        for candidate in self.candidates:
            similarity = self.scorer.score(query, candidate.text)
            if similarity > 0 and 1 - similarity <= self.fuzzy_threshold:
                scored.append((candidate, similarity))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored

    def _match(self, query: str) -> Optional[tuple[Intent, float, Optional[str]]]:
        exact = self._canonical.get(query)
        if exact:
            return exact.intent, EXACT_CONFIDENCE, None

        if query in self.abbreviations:
            return self.abbreviations[query], ABBREVIATION_CONFIDENCE, query

        if query in self.synonyms:
            return self.synonyms[query], SYNONYM_CONFIDENCE, query

        ranked = self._rank(query)
        if ranked:
            best, similarity = ranked[0]
            alias = best.text if best.text != query else None
            return best.intent, similarity, alias

        return None

    def classify(
        self,
        raw_text: str,
        user_id: Optional[str] = None,
        role_hint: Optional[str] = None,
    ) -> Optional[ParsedCommand]:
        started = time.perf_counter()
        query = self._normalize(raw_text)
        match = self._match(query) if query else None
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        if elapsed_ms > LATENCY_TARGET_MS:
            logger.warning(
                "Command interpreter latency exceeds target",
                extra={
                    "context": {
                        "stage": "classify_ms",
                        "elapsed_ms": elapsed_ms,
                        "target_ms": LATENCY_TARGET_MS,
                        "user_id": user_id,
                    }
                },
            )

        if match is None:
            logger.debug(
                "Command not recognized",
                extra={"context": {"user_id": user_id, "role": role_hint, "elapsed_ms": elapsed_ms}},
            )
            return None

        intent, confidence, alias = match
        return ParsedCommand(
            raw_text=raw_text,
            recognized_intent=intent,
            confidence=confidence,
            matched_alias=alias,
            timestamp=datetime.now(timezone.utc),
        )

    def suggest(self, raw_text: str, limit: int = 3) -> list[CommandSuggestion]:
        """Ranked suggestions for unrecognized or uncertain input, one per intent."""
        query = self._normalize(raw_text)
        if not query:
            return []

        suggestions: list[CommandSuggestion] = []
        seen: set[Intent] = set()
        for candidate, similarity in self._rank(query):
            if len(suggestions) >= limit:
                break
            if candidate.intent in seen or similarity <= self.suggestion_min_confidence:
                continue
            seen.add(candidate.intent)
            suggestions.append(
                CommandSuggestion(intent=candidate.intent, description=describe(candidate.intent), confidence=similarity)
            )
        return suggestions

    def should_auto_execute(self, confidence: float) -> bool:
        return should_auto_execute(confidence, self.confidence_threshold)
