"""
Unit tests for the MetadataExtractor.

Tests topic ranking, difficulty scoring, prerequisite inference and the
safe-default fallback.
"""
import pytest

from nuggets.ingestion.metadata_extractor import (
    MetadataExtractor,
    NuggetMetadata,
    count_syllables,
    default_metadata,
)

TCP_TEXT = (
    "Transmission Control Protocol provides reliable delivery. "
    "The Transmission Control Protocol uses handshakes. "
    "Routers forward packets using IP."
)


class TestMetadataExtractor:
    """Tests for MetadataExtractor class."""

    @pytest.fixture
    def extractor(self):
        return MetadataExtractor()

    def test_empty_text_returns_default(self, extractor):
        assert extractor.extract_metadata("") == default_metadata()
        assert extractor.extract_metadata("   \n ") == default_metadata()

    def test_default_metadata_values(self):
        metadata = default_metadata()

        assert metadata.topics == []
        assert metadata.difficulty == 1
        assert metadata.prerequisites == []
        assert metadata.estimated_time == 1
        assert metadata.related_concepts == []

    def test_multi_word_topics_outrank_single_words(self, extractor):
        topics = extractor.extract_topics(TCP_TEXT)

        assert topics == ["Transmission Control Protocol", "IP"]

    def test_sentence_initial_single_words_are_not_topics(self, extractor):
        topics = extractor.extract_topics("Routers forward packets. Switches forward frames.")

        assert topics == []

    def test_related_concepts_are_top_topics(self, extractor):
        metadata = extractor.extract_metadata(TCP_TEXT)

        assert metadata.related_concepts == metadata.topics[:5]

    def test_estimated_time_uses_reading_rate(self, extractor):
        metadata = extractor.extract_metadata("word " * 450)

        assert metadata.estimated_time == 3

    def test_estimated_time_minimum_is_one_minute(self, extractor):
        assert extractor.estimate_time(0) == 1
        assert extractor.estimate_time(10) == 1

    def test_difficulty_in_range(self, extractor):
        assert 1 <= extractor.estimate_difficulty("Hi.") <= 10

    def test_denser_text_is_not_easier(self, extractor):
        simple = "The cat sat. The dog ran."
        dense = (
            "Thermodynamic equilibrium characterization necessitates comprehensive "
            "computational instrumentation and sophisticated interpretation "
        ) * 20 + "."

        assert extractor.estimate_difficulty(dense) > extractor.estimate_difficulty(simple)

    def test_longer_text_is_not_easier(self, extractor):
        base = "Packets travel across networks. Routers choose paths. "

        assert extractor.estimate_difficulty(base * 40) >= extractor.estimate_difficulty(base)

    def test_prerequisites_from_known_topics(self, extractor):
        text = (
            "Congestion Window sizing builds on the Transmission Control Protocol. "
            "Congestion Window growth depends on acknowledgements over IP."
        )
        known = {
            "Congestion Window": 1,  # this unit's own leading topic
            "Transmission Control Protocol": 2,
            "Quantum Chromodynamics": 1,  # not mentioned
            "IP": 10,  # seen only at a higher difficulty
        }

        metadata = extractor.extract_metadata(text, known)

        assert metadata.topics[0] == "Congestion Window"
        assert metadata.prerequisites == ["Transmission Control Protocol"]

    def test_prerequisites_ordered_by_first_mention(self, extractor):
        text = "Later we revisit Routing Tables, but first Subnet Masks and then Routing Tables again."
        known = {"Routing Tables": 1, "Subnet Masks": 1}

        prerequisites = extractor.infer_prerequisites(text, ["Something Else"], 5, known)

        assert prerequisites == ["Routing Tables", "Subnet Masks"]

    def test_failure_returns_default(self, extractor, monkeypatch):
        def explode(text):
            raise RuntimeError("boom")

        monkeypatch.setattr(extractor, "extract_topics", explode)

        assert extractor.extract_metadata(TCP_TEXT) == default_metadata()

    def test_metadata_validates(self, extractor):
        metadata = extractor.extract_metadata(TCP_TEXT)

        assert NuggetMetadata.model_validate(metadata.model_dump()) == metadata


class TestSyllables:
    """Tests for the syllable heuristic."""

    def test_short_words_have_one_syllable(self):
        assert count_syllables("cat") == 1

    def test_vowel_groups(self):
        assert count_syllables("computer") == 3
