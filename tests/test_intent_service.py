import itertools
import logging
from unittest.mock import patch

import pytest

from catatkas.services.intent_service import (
    COMMAND_ABBREVIATIONS,
    COMMAND_SYNONYMS,
    CandidateSource,
    CommandInterpreter,
    Intent,
    JaroWinklerScorer,
    describe,
    is_intent_allowed,
    should_auto_execute,
)


class FixedScorer:
    """Scores every candidate the same, except for explicit overrides."""

    def __init__(self, value: float, overrides: dict | None = None):
        self.value = value
        self.overrides = overrides or {}

    def score(self, query: str, candidate: str) -> float:
        return self.overrides.get(candidate, self.value)


@pytest.fixture
def interpreter():
    return CommandInterpreter()


class TestExactMatch:
    def test_canonical_text_scores_one(self, interpreter):
        parsed = interpreter.classify("catat penjualan")
        assert parsed.recognized_intent == Intent.RECORD_SALE
        assert parsed.confidence == 1.0
        assert parsed.matched_alias is None

    def test_normalizes_case_and_whitespace(self, interpreter):
        parsed = interpreter.classify("  LIHAT Laporan Hari Ini ")
        assert parsed.recognized_intent == Intent.VIEW_REPORT_TODAY
        assert parsed.confidence == 1.0

    def test_every_canonical_intent_matches_itself(self, interpreter):
        for intent in Intent:
            parsed = interpreter.classify(intent.value.replace("_", " "))
            assert parsed.recognized_intent == intent
            assert parsed.confidence == 1.0

    def test_canonical_wins_over_conflicting_synonym(self):
        interpreter = CommandInterpreter(synonyms={"menu": Intent.HELP})
        parsed = interpreter.classify("menu")
        assert parsed.recognized_intent == Intent.MENU
        assert parsed.confidence == 1.0

    def test_canonical_wins_when_text_is_also_a_synonym(self, interpreter):
        parsed = interpreter.classify("cek saldo")
        assert parsed.recognized_intent == Intent.CHECK_BALANCE
        assert parsed.confidence == 1.0


class TestAliases:
    def test_abbreviation(self, interpreter):
        parsed = interpreter.classify("cp")
        assert parsed.recognized_intent == Intent.RECORD_SALE
        assert parsed.confidence == 0.95
        assert parsed.matched_alias == "cp"

    def test_abbreviation_is_case_insensitive(self, interpreter):
        parsed = interpreter.classify("LL ")
        assert parsed.recognized_intent == Intent.VIEW_REPORT_TODAY
        assert parsed.confidence == 0.95

    def test_synonym(self, interpreter):
        parsed = interpreter.classify("Saldo")
        assert parsed.recognized_intent == Intent.VIEW_BALANCE
        assert parsed.confidence == 0.9
        assert parsed.matched_alias == "saldo"


class TestFuzzyMatch:
    def test_typo_is_tolerated(self, interpreter):
        parsed = interpreter.classify("catat penjulan")
        assert parsed.recognized_intent == Intent.RECORD_SALE
        assert 0.9 < parsed.confidence < 1.0
        assert parsed.matched_alias == "catat penjualan"
        assert interpreter.should_auto_execute(parsed.confidence) is True

    def test_dropped_vowel_is_tolerated(self, interpreter):
        parsed = interpreter.classify("catat penjualn")
        assert parsed.recognized_intent == Intent.RECORD_SALE
        assert parsed.confidence >= 0.7
        assert parsed.matched_alias == "catat penjualan"

    def test_unrelated_text_does_not_match(self, interpreter):
        assert interpreter.classify("xyzzy") is None

    def test_short_query_never_fuzzy_matches(self):
        interpreter = CommandInterpreter(scorer=FixedScorer(1.0))
        assert interpreter.classify("q") is None

    def test_raising_threshold_never_loses_a_match(self):
        matched = [
            CommandInterpreter(fuzzy_threshold=threshold).classify("lapran") is not None
            for threshold in (0.05, 0.1, 0.15, 0.2, 0.3, 0.4, 0.6)
        ]
        first = matched.index(True)
        assert all(matched[first:])
        assert matched[0] is False

    def test_ties_resolve_to_candidate_order(self):
        interpreter = CommandInterpreter(scorer=FixedScorer(0.8))
        parsed = interpreter.classify("qq")
        assert parsed.recognized_intent == Intent.RECORD_SALE
        assert parsed.confidence == 0.8

    def test_low_confidence_is_not_auto_executed(self):
        interpreter = CommandInterpreter(scorer=FixedScorer(0.65))
        parsed = interpreter.classify("qq")
        assert parsed.confidence == 0.65
        assert interpreter.should_auto_execute(parsed.confidence) is False

    def test_jaro_winkler_scorer_can_be_substituted(self):
        interpreter = CommandInterpreter(scorer=JaroWinklerScorer())
        parsed = interpreter.classify("catat penjulan")
        assert parsed.recognized_intent == Intent.RECORD_SALE


class TestMalformedInput:
    @pytest.mark.parametrize("raw", ["", "   ", None, 123, ["cp"]])
    def test_returns_none(self, interpreter, raw):
        assert interpreter.classify(raw) is None

    def test_suggest_on_malformed_input(self, interpreter):
        assert interpreter.suggest(None) == []
        assert interpreter.suggest("") == []


class TestSuggest:
    def test_one_suggestion_per_intent(self):
        scorer = FixedScorer(0.5, {"tambah": 0.95, "input": 0.92, "catat penjualan": 0.9})
        interpreter = CommandInterpreter(scorer=scorer)

        suggestions = interpreter.suggest("qq")

        assert [s.intent for s in suggestions] == [
            Intent.RECORD_SALE,
            Intent.RECORD_EXPENSE,
            Intent.VIEW_REPORT_TODAY,
        ]
        assert suggestions[0].confidence == 0.95
        assert suggestions[0].description == "Catat penjualan"

    def test_respects_limit(self):
        interpreter = CommandInterpreter(scorer=FixedScorer(0.9))
        assert len(interpreter.suggest("qq", limit=2)) == 2

    def test_excludes_weak_matches(self):
        interpreter = CommandInterpreter(scorer=FixedScorer(0.25), fuzzy_threshold=0.8)
        assert interpreter.suggest("qq") == []

    def test_typo_suggests_intended_command(self, interpreter):
        suggestions = interpreter.suggest("laporn")
        assert suggestions[0].intent == Intent.VIEW_REPORT_TODAY


class TestLatency:
    def test_slow_classification_logs_warning(self, interpreter, caplog):
        ticks = itertools.count(0, 0.25)
        with patch("catatkas.services.intent_service.time.perf_counter", side_effect=lambda: next(ticks)):
            with caplog.at_level(logging.WARNING, logger="catatkas.intent_service"):
                parsed = interpreter.classify("cp", user_id="u1")

        assert parsed.recognized_intent == Intent.RECORD_SALE
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert warnings[0].context["elapsed_ms"] > 100
        assert warnings[0].context["target_ms"] == 100


class TestCandidates:
    def test_candidate_list_covers_every_table(self, interpreter):
        sources = [c.source for c in interpreter.candidates]
        assert sources.count(CandidateSource.CANONICAL) == len(Intent)
        assert sources.count(CandidateSource.SYNONYM) == len(COMMAND_SYNONYMS)
        assert sources.count(CandidateSource.ABBREVIATION) == len(COMMAND_ABBREVIATIONS)

    def test_canonical_text_replaces_underscores(self, interpreter):
        texts = {c.text for c in interpreter.candidates if c.source == CandidateSource.CANONICAL}
        assert "lihat laporan bulan ini" in texts


class TestPolicy:
    def test_auto_execute_threshold(self):
        assert should_auto_execute(0.7) is True
        assert should_auto_execute(0.69) is False
        assert should_auto_execute(0.6999999) is False

    def test_role_permissions(self):
        assert is_intent_allowed(Intent.RECORD_SALE, "employee") is True
        assert is_intent_allowed(Intent.RECORD_SALE, "investor") is False
        assert is_intent_allowed(Intent.VIEW_REPORT_MONTH, "investor") is True
        assert is_intent_allowed(Intent.HELP, None) is False
        assert is_intent_allowed(Intent.HELP, "guest") is False

    def test_describe(self):
        assert describe(Intent.HELP) == "Bantuan"
